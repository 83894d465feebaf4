"""
Run bookkeeping records: effect runs, dead letters and outbox entries.

These are plain dataclasses so the engine stays independent of the
storage layer; repositories convert to and from their own rows.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from effects_core.contracts.types import EffectRunStatus, ExecutionMode, OutboxStatus


@dataclass
class EffectRun:
    """
    Attempt-tracking record for one (event, effect type).

    The single authoritative record for idempotency and retry state.
    """

    event_id: UUID
    tenant_id: UUID
    effect_type: str
    idempotency_key: str
    id: UUID = field(default_factory=uuid4)
    effect_config: dict[str, Any] = field(default_factory=dict)
    target_type: str = "none"
    status: EffectRunStatus = EffectRunStatus.PENDING
    execution_mode: str = ExecutionMode.SYNC.value
    attempts: int = 0
    next_retry_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error_message: str | None = None

    def copy(self, **changes: Any) -> "EffectRun":
        return replace(self, **changes)


@dataclass(frozen=True)
class EffectDeadLetter:
    """Terminal failure record for operators and alerting."""

    effect_run_id: UUID
    event_id: UUID
    effect_type: str
    error_details: dict[str, Any]
    tenant_id: UUID | None = None
    created_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)

    @property
    def message(self) -> str:
        return str(self.error_details.get("message", ""))

    @property
    def attempts(self) -> int:
        return int(self.error_details.get("attempts", 0))


@dataclass
class OutboxEntry:
    """At-least-once delivery tracking for an event."""

    event_id: UUID
    status: OutboxStatus = OutboxStatus.PENDING
    created_at: datetime | None = None
    last_attempt_at: datetime | None = None
