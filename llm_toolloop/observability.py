"""
Observability log for llm_toolloop.

A bounded ring buffer of structured events recorded by the transport, RPC,
tool-client and turn layers. Events are mirrored to the stdlib logger so
they also reach ordinary log output.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from rich.table import Table
from rich.text import Text

from .constants import EVENT_LOG_CAPACITY
from .utils import format_timestamp, truncate_string

logger = logging.getLogger(__name__)


class EventLevel(Enum):
    """Severity of an observability event."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    @property
    def logging_level(self) -> int:
        return _LOGGING_LEVELS[self]


_LEVEL_RANK = {
    EventLevel.DEBUG: 0,
    EventLevel.INFO: 1,
    EventLevel.WARN: 2,
    EventLevel.ERROR: 3,
}

_LOGGING_LEVELS = {
    EventLevel.DEBUG: logging.DEBUG,
    EventLevel.INFO: logging.INFO,
    EventLevel.WARN: logging.WARNING,
    EventLevel.ERROR: logging.ERROR,
}

_LEVEL_STYLES = {
    EventLevel.DEBUG: "dim",
    EventLevel.INFO: "cyan",
    EventLevel.WARN: "yellow",
    EventLevel.ERROR: "bold red",
}


@dataclass
class LogEvent:
    """A single diagnostic event."""
    level: EventLevel
    category: str
    message: str
    timestamp: float = field(default_factory=time.time)
    server_url: Optional[str] = None
    chat_id: Optional[str] = None
    request_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "category": self.category,
            "message": self.message,
            "server_url": self.server_url,
            "chat_id": self.chat_id,
            "request_id": self.request_id,
            "details": self.details,
        }


EventListener = Callable[[LogEvent], None]


class EventLog:
    """
    Ring-buffered structured event sink.

    Oldest events are dropped once ``capacity`` is reached.
    """

    def __init__(self, capacity: int = EVENT_LOG_CAPACITY) -> None:
        self._events: deque = deque(maxlen=capacity)
        self._listeners: List[EventListener] = []

    @property
    def capacity(self) -> int:
        return self._events.maxlen

    def __len__(self) -> int:
        return len(self._events)

    def record(
        self,
        level: EventLevel,
        category: str,
        message: str,
        server_url: Optional[str] = None,
        chat_id: Optional[str] = None,
        request_id: Optional[str] = None,
        **details: Any,
    ) -> LogEvent:
        """
        Append an event and notify subscribers.

        Args:
            level: Event severity
            category: Subsystem tag such as "sse", "rpc" or "turn"
            message: Human-readable description
            server_url: Tool server the event concerns, if any
            chat_id: Chat the event concerns, if any
            request_id: JSON-RPC request id, if any
            **details: Extra structured fields

        Returns:
            The recorded event
        """
        event = LogEvent(
            level=level,
            category=category,
            message=message,
            server_url=server_url,
            chat_id=chat_id,
            request_id=request_id,
            details=details,
        )
        self._events.append(event)
        logger.log(level.logging_level, "[%s] %s", category, message)

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed")
        return event

    def debug(self, category: str, message: str, **kwargs: Any) -> LogEvent:
        return self.record(EventLevel.DEBUG, category, message, **kwargs)

    def info(self, category: str, message: str, **kwargs: Any) -> LogEvent:
        return self.record(EventLevel.INFO, category, message, **kwargs)

    def warn(self, category: str, message: str, **kwargs: Any) -> LogEvent:
        return self.record(EventLevel.WARN, category, message, **kwargs)

    def error(self, category: str, message: str, **kwargs: Any) -> LogEvent:
        return self.record(EventLevel.ERROR, category, message, **kwargs)

    def recent(
        self,
        server_url: Optional[str] = None,
        level_min: Optional[EventLevel] = None,
        category: Optional[str] = None,
        request_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LogEvent]:
        """
        Return buffered events, oldest first, matching every given filter.

        Args:
            server_url: Only events for this server
            level_min: Only events at or above this severity
            category: Only events in this category
            request_id: Only events for this RPC request
            limit: Keep only the newest ``limit`` matches
        """
        events = [
            e for e in self._events
            if (server_url is None or e.server_url == server_url)
            and (level_min is None or e.level.rank >= level_min.rank)
            and (category is None or e.category == category)
            and (request_id is None or e.request_id == request_id)
        ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def categories(self) -> List[str]:
        return sorted({e.category for e in self._events})

    def last_request_id(self, chat_id: Optional[str] = None) -> Optional[str]:
        """Most recent RPC request id, optionally restricted to one chat."""
        for event in reversed(self._events):
            if event.request_id and (chat_id is None or event.chat_id == chat_id):
                return event.request_id
        return None

    def clear(self, server_url: Optional[str] = None) -> None:
        """Drop all events, or only those for one server."""
        if server_url is None:
            self._events.clear()
            return
        kept = [e for e in self._events if e.server_url != server_url]
        self._events.clear()
        self._events.extend(kept)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """
        Register a listener called for every new event.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def render(self, events: Optional[Iterable[LogEvent]] = None, title: str = "Events") -> Table:
        """Build a rich table of events for a console diagnostics view."""
        table = Table(title=title, show_lines=False)
        table.add_column("Time", style="dim", no_wrap=True)
        table.add_column("Level", no_wrap=True)
        table.add_column("Category", style="magenta", no_wrap=True)
        table.add_column("Server", style="blue")
        table.add_column("Message")

        for event in (self._events if events is None else events):
            style = _LEVEL_STYLES[event.level]
            table.add_row(
                format_timestamp(event.timestamp),
                f"[{style}]{event.level.value}[/{style}]",
                event.category,
                Text(truncate_string(event.server_url or "-", 40)),
                Text(truncate_string(event.message, 120)),
            )
        return table
