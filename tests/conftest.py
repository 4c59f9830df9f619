"""Shared test fixtures for the voice coach test suite.

Provides a scripted reasoning backend, an in-memory store and a manually
fired timer so flow timeouts can be tested without sleeping.
"""

import threading

import pytest

from src.agent.llm import BackendError
from src.memory.store import InMemoryStore
from src.tools.workout_store import WorkoutStore


class FakeBackend:
    """Scripted stand-in for ``GeminiBackend``.

    Each ``generate`` call pops the next scripted reply. A reply that is an
    exception instance is raised instead. ``block`` makes calls wait on an
    event, which is how tests simulate a slow backend.
    """

    def __init__(self, replies=None, default=None):
        self.replies = list(replies or [])
        self.default = default
        self.calls: list[dict] = []
        self.block = threading.Event()
        self.release = threading.Event()
        self.entered = threading.Event()

    def generate(self, prompt, *, system_instruction=None, temperature=0.1):
        self.calls.append({
            "prompt": prompt, "system_instruction": system_instruction, "temperature": temperature,
        })
        self.entered.set()
        if self.block.is_set():
            self.release.wait(timeout=5)
        reply = self.replies.pop(0) if self.replies else self.default
        if isinstance(reply, Exception):
            raise reply
        if reply is None:
            raise BackendError("no scripted reply")
        return reply


class ManualTimer:
    """``threading.Timer`` look-alike that only fires when told to."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        if self.started and not self.cancelled:
            self.function()


class ManualTimerFactory:
    """Records every timer built so a test can fire the latest one."""

    def __init__(self):
        self.timers: list[ManualTimer] = []

    def __call__(self, interval, function):
        timer = ManualTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def latest(self) -> ManualTimer | None:
        return self.timers[-1] if self.timers else None

    def fire_latest(self):
        self.latest.fire()


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def timers():
    return ManualTimerFactory()


@pytest.fixture
def workout_store():
    return WorkoutStore(persist=False)
