"""Named lifecycle events that plugins attach triggers to."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

_log = logging.getLogger("nginxwrap.events")

PRE_START = "pre-start"
START = "start"
PRE_RELOAD = "pre-reload"
EXIT = "exit"

Message = Mapping[str, Any]


@dataclass(frozen=True)
class Trigger:
    """A named callable run when an event fires."""

    name: str
    function: Callable[[Message], None]

    def __call__(self, message: Message) -> None:
        self.function(message)


class EventNotFoundError(KeyError):
    """Raised when an event name is not known."""

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"no event named ({self.name})"


class Event:
    """An event holding ordinary triggers followed by final triggers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._triggers: list[Trigger] = []
        self._final_triggers: list[Trigger] = []
        self._lock = threading.Lock()

    def add_trigger(self, trigger: Trigger) -> None:
        with self._lock:
            self._triggers.append(trigger)

    def add_final_trigger(self, trigger: Trigger) -> None:
        """Add a trigger that runs after every ordinary trigger."""
        with self._lock:
            self._final_triggers.append(trigger)

    @property
    def triggers(self) -> tuple[Trigger, ...]:
        with self._lock:
            return (*self._triggers, *self._final_triggers)

    def trigger(self, message: Message | None = None) -> None:
        """Run every trigger; failures are gathered and raised together."""
        payload: Message = {} if message is None else message
        failures: list[Exception] = []
        for trig in self.triggers:
            try:
                trig(payload)
            except Exception as exc:
                _log.error("trigger (%s) for event (%s) failed: %s", trig.name, self.name, exc)
                failures.append(exc)
        if failures:
            raise ExceptionGroup(
                f"{len(failures)} trigger(s) failed for event ({self.name})", failures
            )

    def __repr__(self) -> str:
        return f"Event({self.name!r})"


class EventRegistry:
    """The set of NGINX lifecycle events."""

    def __init__(self) -> None:
        self.nginx_pre_start = Event(PRE_START)
        self.nginx_start = Event(START)
        self.nginx_pre_reload = Event(PRE_RELOAD)
        self.nginx_exit = Event(EXIT)
        self._events = {
            event.name: event
            for event in (self.nginx_pre_start, self.nginx_start, self.nginx_pre_reload, self.nginx_exit)
        }

    def event_names(self) -> list[str]:
        return list(self._events)

    def event(self, name: str) -> Event:
        try:
            return self._events[name]
        except KeyError:
            raise EventNotFoundError(name) from None

    def add_trigger_by_event_name(self, name: str, trigger: Trigger) -> None:
        self.event(name).add_trigger(trigger)


_global_registry = EventRegistry()


def global_events() -> EventRegistry:
    """The process-wide event registry."""
    return _global_registry


def reset_global_events() -> EventRegistry:
    """Replace the process-wide registry with a fresh one and return it."""
    global _global_registry
    _global_registry = EventRegistry()
    return _global_registry