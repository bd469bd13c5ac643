from __future__ import annotations

from rest_framework import serializers


class NotificationBatchSerializer(serializers.Serializer):
    """SharePoint webhook body: `{"value": [notification, ...]}`.

    Entries are kept as raw JSON; each one is validated on its own during
    dispatch so a single bad entry does not reject the batch.
    """

    value = serializers.ListField(child=serializers.JSONField(), allow_empty=True)
