"""Event records and typed in-process notification channels."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

logger = logging.getLogger(__name__)

LogLevel = Literal["info", "warn", "error"]
TunnelStatusLevel = Literal["info", "error"]


@dataclass(frozen=True)
class LogEvent:
    """Operational diagnostic published on the ``log`` channel."""

    level: LogLevel
    message: str | BaseException


@dataclass(frozen=True)
class TunnelStatusEvent:
    """Tunnel outcome: callback URL on success, failure cause on error."""

    level: TunnelStatusLevel
    message: str | BaseException


@dataclass(frozen=True)
class CallbackEvent:
    """One inbound ``POST /callback`` request, already normalized."""

    query_parameters: dict[str, str] = field(default_factory=dict)
    body: Any = None
    content_type: str = ""
    level: Literal["info"] = "info"


E = TypeVar("E")
Listener = Callable[[E], None]


class EventChannel(Generic[E]):
    """Multi-consumer channel for a single event type.

    Delivery is synchronous and in registration order. A listener that raises
    is logged and skipped; the remaining listeners still receive the event.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[tuple[Listener[E], bool]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener[E]) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        entry = (listener, False)
        self._listeners.append(entry)
        return lambda: self._remove(entry)

    def once(self, listener: Listener[E]) -> Callable[[], None]:
        """Register *listener* for the next event only."""
        entry = (listener, True)
        self._listeners.append(entry)
        return lambda: self._remove(entry)

    def emit(self, event: E) -> int:
        """Deliver *event* to every listener. Returns the number notified."""
        snapshot = list(self._listeners)
        for entry in snapshot:
            if entry[1]:
                self._remove(entry)
        for listener, _ in snapshot:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener on '%s' channel raised", self._name)
        return len(snapshot)

    def clear(self) -> None:
        self._listeners.clear()

    def _remove(self, entry: tuple[Listener[E], bool]) -> None:
        # Identity match: the same function may be subscribed twice.
        for i, existing in enumerate(self._listeners):
            if existing is entry:
                del self._listeners[i]
                return


class HandlerEvents:
    """The three channels a `CallbackHandler` publishes on."""

    def __init__(self) -> None:
        self.log: EventChannel[LogEvent] = EventChannel("log")
        self.callback: EventChannel[CallbackEvent] = EventChannel("callback")
        self.tunnel_status: EventChannel[TunnelStatusEvent] = EventChannel("tunnel_status")

    def clear(self) -> None:
        """Drop every listener on every channel."""
        for channel in (self.log, self.callback, self.tunnel_status):
            channel.clear()
