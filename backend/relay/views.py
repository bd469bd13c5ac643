from __future__ import annotations

import logging

from django.http import HttpResponse
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from relay.directives import DESTINATION_QUEUE, parse_directive, validate_directive
from relay.dispatcher import get_dispatcher, get_dispatcher_status, resolve_queue_target
from relay.exceptions import MalformedDirective
from relay.processors import get_handler
from relay.serializers import NotificationBatchSerializer

logger = logging.getLogger(__name__)

VALIDATION_TOKEN_PARAM = "validationToken"
CLIENT_STATE_PARAM = "clientState"


def _validation_echo(request) -> HttpResponse | None:
    token = request.query_params.get(VALIDATION_TOKEN_PARAM)
    if token is None:
        return None
    logger.info("Answering webhook validation handshake")
    return HttpResponse(token, content_type="text/plain", status=status.HTTP_200_OK)


class NotificationWebhookView(APIView):
    """
    GET/POST /api/webhooks/notifications/

    Answers the subscription validation handshake and dispatches notification
    batches. A parsed batch is always acknowledged with 200; per-entry
    outcomes are reported in `results`.
    """

    def get(self, request):
        echo = _validation_echo(request)
        if echo is not None:
            return echo
        return HttpResponse(
            "Missing validationToken",
            content_type="text/plain",
            status=status.HTTP_400_BAD_REQUEST,
        )

    def post(self, request):
        echo = _validation_echo(request)
        if echo is not None:
            return echo

        serializer = NotificationBatchSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entries = serializer.validated_data["value"]

        batch = get_dispatcher().dispatch_batch(entries)
        return Response(batch.as_dict(), status=status.HTTP_200_OK)


class RelayStatusView(APIView):
    """GET /api/webhooks/status/ - dispatch counters and registered handlers."""

    def get(self, request):
        return Response(get_dispatcher_status(), status=status.HTTP_200_OK)


class DirectiveCheckView(APIView):
    """
    GET /api/webhooks/directives/?clientState=...

    Decodes a routing directive the way incoming notifications are decoded, so
    a subscription's `clientState` can be checked before it is created. Queue
    directives also resolve their processor and target queue.
    """

    def get(self, request):
        raw = request.query_params.get(CLIENT_STATE_PARAM)
        if raw is None:
            raise MalformedDirective(f"Missing {CLIENT_STATE_PARAM} query parameter")

        directive = validate_directive(parse_directive(raw))
        body = directive.as_dict()
        if directive.destination == DESTINATION_QUEUE:
            handler = get_handler(directive.handler)
            connection, queue_name = resolve_queue_target(directive, handler)
            body["queue"] = {
                "name": queue_name,
                "processor": handler.name,
                "environment": connection.environment or None,
                "folder": connection.organization_unit_id or None,
            }
        return Response(body, status=status.HTTP_200_OK)
