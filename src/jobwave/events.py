# events.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


class EventKind(str, Enum):
    WAVE_STARTED = "wave_started"
    WAVE_FINISHED = "wave_finished"
    JOB_STARTED = "job_started"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_SUSPENDED = "job_suspended"
    JOB_RESUMED = "job_resumed"
    JOB_BLOCKED = "job_blocked"
    RUN_HALTED = "run_halted"
    RUN_COMPLETED = "run_completed"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    unit_id: str
    job_id: Optional[str] = None
    wave: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    at: float = field(default_factory=time.time)


Listener = Callable[[Event], None]


class EventBus:
    """
    Fan-out of lifecycle events to subscribed listeners.

    Events are emitted from worker threads, so listeners are called under a
    lock: a listener never sees two events at once. The lock is re-entrant,
    so a listener may itself cause another emit on the same thread.
    """

    def __init__(self, listeners: Optional[List[Listener]] = None):
        self._listeners: List[Listener] = list(listeners or [])
        self._lock = threading.RLock()

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def emit(self, event: Event) -> None:
        with self._lock:
            for listener in list(self._listeners):
                listener(event)


class EventRecorder:
    """Listener that keeps every event; handy for tests and post-run summaries."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def kinds(self, job_id: Optional[str] = None) -> List[EventKind]:
        return [e.kind for e in self.events if job_id is None or e.job_id == job_id]
