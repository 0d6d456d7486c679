"""
Sinks for state-transition events.
"""
import json
import logging
import os
from typing import List, Protocol

from ..MODELS.service_state import ServiceState, TransitionEvent

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Anything that consumes transition events, in emission order."""

    def emit(self, event: TransitionEvent) -> None:
        ...


class LoggingEventSink:
    """
    Writes each transition to the standard logger.
    """
    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def emit(self, event: TransitionEvent) -> None:
        level = logging.WARNING if event.new_state in (ServiceState.DEGRADED, ServiceState.BLOCKED) else logging.INFO
        if event.error:
            self.log.log(level, "%s: %s -> %s (%s)", event.service, event.old_state.value,
                         event.new_state.value, event.error.get("message", event.error.get("kind")))
        else:
            self.log.log(level, "%s: %s -> %s", event.service, event.old_state.value, event.new_state.value)


class MemoryEventSink:
    """Keeps events in a list."""

    def __init__(self):
        self.events: List[TransitionEvent] = []

    def emit(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def transitions(self, service: str) -> List[ServiceState]:
        """
        States a service went through, starting with its first new state.
        """
        return [e.new_state for e in self.events if e.service == service]


class JsonLinesEventSink:
    """
    Appends events to a JSON-lines file for external collectors.
    """
    def __init__(self, path: str):
        self.path = path
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    def emit(self, event: TransitionEvent) -> None:
        with open(self.path, "a") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True) + "\n")
