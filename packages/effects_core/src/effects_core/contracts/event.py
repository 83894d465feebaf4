"""
System Event - the immutable fact every effect is derived from.

Producers insert a system_events row and an event_outbox row in the same
transaction. The engine only ever reads events.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(str(value))
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SystemEvent:
    """
    A recorded domain event.

    Attributes:
        id: Unique identifier of the event
        event_name: Verb-style name (e.g., "absence.approved")
        tenant_id: Multi-tenant isolation key
        actor_user_id: User who caused the event
        actor_role: Role of the actor at the time of the event
        entity_type: Kind of entity the event is about (e.g., "absence_requests")
        entity_id: Identifier of that entity
        module: Producing application module
        payload: Event data (status, assignee, dates, ...)
        context: Request metadata (ip_address, user_agent, ...)
        correlation_id: Optional correlation ID for tracing
        occurred_at: When the event occurred (UTC)
    """

    id: UUID
    event_name: str
    tenant_id: UUID
    actor_user_id: str | None = None
    actor_role: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    module: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    correlation_id: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SystemEvent":
        """Create a SystemEvent from a storage row or JSON document."""
        return cls(
            id=_as_uuid(data["id"]),
            event_name=data["event_name"],
            tenant_id=_as_uuid(data["tenant_id"]),
            actor_user_id=str(data["actor_user_id"]) if data.get("actor_user_id") else None,
            actor_role=data.get("actor_role"),
            entity_type=data.get("entity_type"),
            entity_id=str(data["entity_id"]) if data.get("entity_id") else None,
            module=data.get("module"),
            payload=data.get("payload") or {},
            context=data.get("context") or {},
            correlation_id=data.get("correlation_id"),
            occurred_at=_as_datetime(data.get("occurred_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": str(self.id),
            "event_name": self.event_name,
            "tenant_id": str(self.tenant_id),
            "actor_user_id": self.actor_user_id,
            "actor_role": self.actor_role,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "module": self.module,
            "payload": self.payload,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @property
    def assigned_user_id(self) -> str | None:
        """The assignee named in the payload, if any."""
        value = self.payload.get("assigned_user_id") or self.payload.get("assignee_id")
        return str(value) if value else None
