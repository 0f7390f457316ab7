"""Shared pytest fixtures: output and event collectors, settings isolation."""

import logging
import threading
from typing import List, Tuple

import pytest

from stepn.local.config import effective_settings
from stepn.local.supervisor import Service


class OutputCollector:
    """Thread-safe line sink that records forwarded service output."""

    def __init__(self):
        self.lines: List[Tuple[str, str, int]] = []
        self._cond = threading.Condition()

    def __call__(self, service: str, line: str, level: int) -> None:
        with self._cond:
            self.lines.append((service, line, level))
            self._cond.notify_all()

    def lines_of(self, service: str) -> List[str]:
        with self._cond:
            return [line for name, line, _ in self.lines if name == service]

    def index(self, service: str, text: str) -> int:
        """Position of the first line of `service` containing `text`, or -1."""
        with self._cond:
            for i, (name, line, _) in enumerate(self.lines):
                if name == service and text in line:
                    return i
        return -1

    def wait_for(self, service: str, text: str, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(
                lambda: any(name == service and text in line for name, line, _ in self.lines), timeout
            )


class EventRecorder:
    """Stands in for the scheduler queue and records supervisor events."""

    def __init__(self):
        self.events = []
        self._cond = threading.Condition()

    def __call__(self, event) -> None:
        with self._cond:
            self.events.append(event)
            self._cond.notify_all()

    @property
    def kinds(self) -> List[str]:
        with self._cond:
            return [event.kind for event in self.events]

    def wait_for(self, kind: str, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: any(e.kind == kind for e in self.events), timeout)

    def payload_of(self, kind: str):
        with self._cond:
            return next(e.payload for e in self.events if e.kind == kind)


@pytest.fixture
def output():
    return OutputCollector()


@pytest.fixture
def events():
    return EventRecorder()


@pytest.fixture
def make_service():
    def _make(name, command="true", deps=(), env=None, delay=0.0, triggers=()):
        return Service(
            name=name,
            command=command,
            dependencies=frozenset(deps),
            environment=env or {},
            delay=delay,
            triggers=tuple(triggers),
        )
    return _make


@pytest.fixture(autouse=True)
def isolated_settings():
    """Restores settings and root logging handlers after every test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield effective_settings
    effective_settings.reset()
    root.handlers[:] = handlers
    root.setLevel(level)
