from __future__ import annotations

from rest_framework.renderers import JSONRenderer

_SUCCESS_ENVELOPE_KEYS = frozenset({"data", "meta"})


class EnvelopeJSONRenderer(JSONRenderer):
    """
    Wrap successful JSON responses in a `{ "data": ... }` envelope.

    Error responses are shaped by `config.exception_handler.custom_exception_handler`
    and pass through untouched.
    """

    def render(self, data, accepted_media_type=None, renderer_context=None):
        response = renderer_context.get("response") if renderer_context else None
        if response is not None and response.status_code >= 400:
            return super().render(data, accepted_media_type, renderer_context)

        if data is None or self._is_enveloped(data):
            return super().render(data, accepted_media_type, renderer_context)

        return super().render({"data": data}, accepted_media_type, renderer_context)

    @staticmethod
    def _is_enveloped(data) -> bool:
        return isinstance(data, dict) and "data" in data and set(data).issubset(_SUCCESS_ENVELOPE_KEYS)
