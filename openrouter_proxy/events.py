"""Key lifecycle events."""

import logging
from typing import Dict, Protocol

KEY_ROTATION = "Key Rotation"
KEY_SUCCESS = "Key Success"
RATE_LIMIT_HIT = "Rate Limit Hit"
KEY_DEACTIVATED = "Key Deactivated"
KEY_REACTIVATED = "Key Reactivated"
NEW_KEY_ADDED = "New Key Added"


class EventSink(Protocol):
    def emit(self, event: str, fields: Dict[str, object]) -> None: ...


class LoggingEventSink:
    """Writes each event as one line on the ``openrouter_proxy.events`` logger."""

    def __init__(self, logger_name: str = "openrouter_proxy.events"):
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: str, fields: Dict[str, object]) -> None:
        details = " ".join(f"{name}={value}" for name, value in fields.items())
        self._logger.info("%s %s", event, details)
