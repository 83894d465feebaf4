"""
Effect engine database models.

Tables read or written by the dispatch engine:
- system_events: immutable domain events (written by producers)
- event_outbox: at-least-once delivery tracking per event
- impact_matrix: effect rules per event name (written by operators)
- effect_runs: one attempt-tracking row per (event, effect type)
- effect_dead_letters: terminal failures
- effect_settings: per-tenant effect configuration
- employees / event_subscriptions: audience lookups
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

EffectsBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EffectsModelMixin:
    """Common fields for engine-owned tables."""

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class SystemEventRow(EffectsBase, EffectsModelMixin):
    """A recorded domain event."""

    __tablename__ = "system_events"

    tenant_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    event_name = Column(String(100), nullable=False)
    actor_user_id = Column(String(64), nullable=True)
    actor_role = Column(String(50), nullable=True)
    entity_type = Column(String(100), nullable=True)
    entity_id = Column(String(64), nullable=True)
    module = Column(String(50), nullable=True)
    payload = Column(JSONType, nullable=False, default=dict)
    context = Column(JSONType, nullable=False, default=dict)
    correlation_id = Column(String(100), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_system_events_tenant_name", "tenant_id", "event_name"),
    )


class EventOutboxRow(EffectsBase, EffectsModelMixin):
    """Delivery tracking for one event."""

    __tablename__ = "event_outbox"

    event_id = Column(Uuid(as_uuid=True), nullable=False, unique=True)
    tenant_id = Column(Uuid(as_uuid=True), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_event_outbox_status_created", "status", "created_at"),
    )


class ImpactMatrixRow(EffectsBase, EffectsModelMixin):
    """One effect rule for an event name."""

    __tablename__ = "impact_matrix"

    event_name = Column("action_name", String(100), nullable=False)
    effect_type = Column(String(100), nullable=False)
    effect_category = Column(String(50), nullable=True)
    target_resolution_rule = Column(JSONType, nullable=False, default=dict)
    conditions = Column(JSONType, nullable=True)
    priority = Column(String(20), nullable=False, default="normal")
    execution_mode = Column(String(10), nullable=False, default="sync")
    retry_policy = Column(JSONType, nullable=False, default=dict)
    failure_handling = Column(String(20), nullable=False, default="retry")
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("action_name", "effect_type", name="uq_impact_matrix_action_effect"),
        Index("idx_impact_matrix_action_active", "action_name", "is_active"),
    )


class EffectRunRow(EffectsBase, EffectsModelMixin):
    """Attempt tracking for one (event, effect type)."""

    __tablename__ = "effect_runs"

    event_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    tenant_id = Column(Uuid(as_uuid=True), nullable=False)
    effect_type = Column(String(100), nullable=False)
    effect_config = Column(JSONType, nullable=False, default=dict)
    target_type = Column(String(50), nullable=False, default="none")
    status = Column(String(20), nullable=False, default="pending")
    execution_mode = Column(String(10), nullable=False, default="sync")
    idempotency_key = Column(String(200), nullable=False, unique=True)
    attempts = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_effect_runs_status_next_retry", "status", "next_retry_at"),
        Index("idx_effect_runs_status_started", "status", "started_at"),
    )


class EffectDeadLetterRow(EffectsBase, EffectsModelMixin):
    """Terminal failure of an effect run (written once per run)."""

    __tablename__ = "effect_dead_letters"

    effect_run_id = Column(Uuid(as_uuid=True), nullable=False, unique=True)
    event_id = Column(Uuid(as_uuid=True), nullable=False)
    tenant_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    effect_type = Column(String(100), nullable=False)
    error_details = Column(JSONType, nullable=False, default=dict)


class EffectSettingRow(EffectsBase, EffectsModelMixin):
    """Tenant-level configuration for an effect type."""

    __tablename__ = "effect_settings"

    tenant_id = Column(Uuid(as_uuid=True), nullable=False)
    effect_type = Column(String(100), nullable=False)
    settings = Column(JSONType, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_effect_settings_tenant_type", "tenant_id", "effect_type"),
    )


class EmployeeRow(EffectsBase, EffectsModelMixin):
    """Organisation membership used for audience resolution."""

    __tablename__ = "employees"

    company_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    user_id = Column(String(64), nullable=True)
    role = Column(String(50), nullable=True)
    team = Column(String(100), nullable=True)
    department = Column(String(100), nullable=True)
    manager_id = Column(Uuid(as_uuid=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_employees_company_role", "company_id", "role"),
        Index("idx_employees_company_user", "company_id", "user_id"),
    )


class EventSubscriptionRow(EffectsBase, EffectsModelMixin):
    """A user's opt-in to an event name."""

    __tablename__ = "event_subscriptions"

    tenant_id = Column(Uuid(as_uuid=True), nullable=False)
    event_name = Column(String(100), nullable=False)
    user_id = Column(String(64), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        Index("idx_event_subscriptions_tenant_event", "tenant_id", "event_name", "is_active"),
    )
