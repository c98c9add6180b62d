import threading

import pytest

from cimatrix.errors import SkipHistoryUnavailable, StepInvocationError
from cimatrix.history import HistoryStore, InMemoryHistoryStore
from cimatrix.model import TriggerContext, TriggerKind
from cimatrix.tasks import InvocationResult, TaskRunner


class FakeTaskRunner(TaskRunner):
    """
    Scripted task runner.

    `exit_codes` maps a rendered command to its exit code (default 0).
    Commands listed in `raises` raise StepInvocationError. Commands listed
    in `blocking` wait until the cancel event is set.
    """

    def __init__(self, exit_codes=None, raises=(), blocking=()):
        self.exit_codes = dict(exit_codes or {})
        self.raises = set(raises)
        self.blocking = set(blocking)
        self.calls = []
        self.started = threading.Event()
        self._lock = threading.Lock()
        self._active = 0
        self.max_active = 0

    def invoke(self, invocation, cancel_event):
        with self._lock:
            self.calls.append(invocation.run)
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            if invocation.run in self.raises:
                raise StepInvocationError(f"cannot start {invocation.run}")
            if invocation.run in self.blocking:
                self.started.set()
                cancel_event.wait(5)
            return InvocationResult(exit_code=self.exit_codes.get(invocation.run, 0), output=invocation.run)
        finally:
            with self._lock:
                self._active -= 1


class BrokenHistoryStore(HistoryStore):
    """History store whose backend is always down."""

    def lookup(self, key):
        raise SkipHistoryUnavailable("backend down")

    def record(self, key, fingerprint):
        raise SkipHistoryUnavailable("backend down")


@pytest.fixture
def task_runner():
    return FakeTaskRunner()


@pytest.fixture
def history():
    return InMemoryHistoryStore()


@pytest.fixture
def pr_trigger():
    return TriggerContext(event=TriggerKind.PULL_REQUEST, fingerprint="fp-1", ref="main")


@pytest.fixture
def push_trigger():
    return TriggerContext(event=TriggerKind.PUSH, fingerprint="fp-1", ref="main")
