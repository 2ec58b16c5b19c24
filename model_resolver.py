"""
Model routing: "假流式/gemini-2.5-flash" -> upstream "gemini-2.5-flash" delivered as fake-stream.
Pure function of (settings, requested model, stream flag).
"""
import logging
import re

from models import DeliveryMode, ModelRoute

logger = logging.getLogger(__name__)

# A routing tag with no ASCII letters or digits (e.g. an unlisted Chinese marker)
_UNKNOWN_TAG = re.compile(r"^[^A-Za-z0-9/]+$")


class ModelResolver:
    def __init__(self, settings):
        self.settings = settings
        self._markers = {}
        for marker in settings.non_stream_markers:
            self._markers[marker.lower()] = DeliveryMode.NON_STREAM
        for marker in settings.real_stream_markers:
            self._markers[marker.lower()] = DeliveryMode.REAL_STREAM
        for marker in settings.fake_stream_markers:
            self._markers[marker.lower()] = DeliveryMode.FAKE_STREAM

    def resolve(self, requested_model, stream=False):
        """Map a requested model identifier to a ModelRoute."""
        name = (requested_model or "").strip()
        mode = None
        if "/" in name:
            head, rest = name.split("/", 1)
            head = head.strip()
            marker_mode = self._markers.get(head.lower())
            if marker_mode is not None:
                mode = marker_mode
                name = rest.strip()
            elif _UNKNOWN_TAG.match(head):
                logger.debug("model: dropping unknown routing tag %r", head)
                name = rest.strip()
        if mode is None:
            mode = DeliveryMode.REAL_STREAM if stream else DeliveryMode.NON_STREAM
        name = self.settings.model_aliases.get(name, name)
        if not name:
            name = self.settings.default_model
        return ModelRoute(upstream_model=name, delivery_mode=mode)
