import logging
from typing import Any, Iterable, Mapping, Optional

logger = logging.getLogger(__name__)


class EventSink:
    """
    Fire-and-forget observability hook.

    fire() never raises: a failing sink must not change the outcome of a
    security decision. Subclasses implement emit().
    """

    def fire(self, name: str, data: Optional[Mapping[str, Any]] = None) -> None:
        try:
            self.emit(name, dict(data or {}))
        except Exception:
            logger.exception("event sink %s failed to emit %s", type(self).__name__, name)

    def emit(self, name: str, data: dict) -> None:
        raise NotImplementedError


class NullEventSink(EventSink):
    def emit(self, name: str, data: dict) -> None:
        return None


class LoggingEventSink(EventSink):
    def __init__(self, logger_name: str = "security.events", level: int = logging.INFO):
        self._log = logging.getLogger(logger_name)
        self._level = level

    def emit(self, name: str, data: dict) -> None:
        self._log.log(self._level, "%s %s", name, data, extra={"event": name, "event_data": data})


class MultiEventSink(EventSink):
    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks = list(sinks)

    def emit(self, name: str, data: dict) -> None:
        # each child guards itself, so one broken sink does not starve the rest
        for sink in self.sinks:
            sink.fire(name, data)
