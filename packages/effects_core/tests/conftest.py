"""
Pytest fixtures for effect dispatch tests.
"""

from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import pytest

from effects_core.contracts.event import SystemEvent
from effects_core.dispatch import DispatchEngine
from effects_core.handlers.base import EffectContext, EffectHandler, EffectResult
from effects_core.handlers.registry import HandlerRegistry
from effects_core.persistence.memory import InMemoryEffectRepository
from effects_core.runner import BatchRunner


class FixedClock:
    """Clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingHandler(EffectHandler):
    """Records every context; fails the first `failures` calls."""

    def __init__(self, failures: int = 0, error: str = "boom", raises: bool = False):
        self.calls: list[EffectContext] = []
        self.failures = failures
        self.error = error
        self.raises = raises

    def execute(self, context: EffectContext) -> EffectResult:
        self.calls.append(context)
        if len(self.calls) <= self.failures:
            if self.raises:
                raise RuntimeError(self.error)
            return EffectResult.fail(self.error)
        return EffectResult.ok({"delivered": len(context.targets)})


@pytest.fixture
def tenant_id():
    """Sample tenant UUID."""
    return UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture
def other_tenant_id():
    """A second tenant, for isolation checks."""
    return UUID("87654321-4321-4321-4321-210987654321")


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def repo():
    return InMemoryEffectRepository()


@pytest.fixture
def make_event(repo, tenant_id, clock):
    """Factory that records an event (and its outbox entry) in the repo."""

    def _make(event_name: str = "absence.approved", payload: dict | None = None, **fields):
        event = SystemEvent(
            id=fields.pop("id", None) or uuid4(),
            event_name=event_name,
            tenant_id=fields.pop("tenant_id", tenant_id),
            actor_user_id=fields.pop("actor_user_id", "user-actor"),
            payload=payload if payload is not None else {},
            occurred_at=fields.pop("occurred_at", clock.now),
            **fields,
        )
        return repo.add_event(event)

    return _make


@pytest.fixture
def make_handler():
    """RecordingHandler factory."""
    return RecordingHandler


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def engine(repo, registry, clock):
    return DispatchEngine(repo, registry, clock=clock, handler_timeout=5.0)


@pytest.fixture
def runner(engine):
    return BatchRunner(engine)
