"""
In-memory effect repository.

Development and test backend with the same compare-and-swap semantics as
the SQL repository. State lives in plain dicts guarded by one lock.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.runs import EffectDeadLetter, EffectRun, OutboxEntry
from effects_core.contracts.types import EffectRunStatus, OutboxStatus
from effects_core.persistence.repo import (
    DEFAULT_EFFECT_SETTINGS,
    ENTITY_OWNER_FIELDS,
    EffectRepository,
)

logger = logging.getLogger(__name__)


class InMemoryEffectRepository(EffectRepository):
    """
    Effect repository for development and testing.

    - Seed data with add_event / add_rule / add_employee / ...
    - Returned records are copies; mutate them through the repository
    - Runs, outbox entries and dead letters are inspectable as attributes
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.events: dict[UUID, SystemEvent] = {}
        self.outbox: dict[UUID, OutboxEntry] = {}
        self.rule_rows: list[dict[str, Any]] = []
        self.runs: dict[str, EffectRun] = {}
        self.dead_letters: list[EffectDeadLetter] = []
        self.settings: dict[tuple[UUID, str], list[tuple[int, dict[str, Any]]]] = {}
        self.employees: list[dict[str, Any]] = []
        self.subscriptions: list[dict[str, Any]] = []
        self.entities: dict[tuple[str, str], dict[str, Any]] = {}

    # --- Seeding helpers ---

    def add_event(self, event: SystemEvent, with_outbox: bool = True) -> SystemEvent:
        """Record an event the way a producer would (event + outbox row)."""
        with self._lock:
            self.events[event.id] = event
            if with_outbox:
                self.outbox[event.id] = OutboxEntry(
                    event_id=event.id,
                    status=OutboxStatus.PENDING,
                    created_at=event.occurred_at,
                )
        return event

    def add_rule(self, event_name: str, effect_type: str, **fields: Any) -> dict[str, Any]:
        """Add an impact matrix row. Unset fields take their column defaults."""
        row = {
            "id": str(uuid4()),
            "action_name": event_name,
            "effect_type": effect_type,
            "target_resolution_rule": {},
            "conditions": None,
            "retry_policy": {},
            "failure_handling": "retry",
            "execution_mode": "sync",
            "is_active": True,
        }
        row.update(fields)
        with self._lock:
            self.rule_rows.append(row)
        return row

    def add_employee(
        self,
        tenant_id: UUID,
        user_id: str | None,
        role: str | None = None,
        team: str | None = None,
        department: str | None = None,
        manager_id: UUID | None = None,
        is_active: bool = True,
    ) -> UUID:
        """Add an employee record; returns its id (usable as manager_id)."""
        employee_id = uuid4()
        with self._lock:
            self.employees.append({
                "id": employee_id,
                "company_id": tenant_id,
                "user_id": user_id,
                "role": role,
                "team": team,
                "department": department,
                "manager_id": manager_id,
                "is_active": is_active,
            })
        return employee_id

    def add_subscription(self, tenant_id: UUID, event_name: str, user_id: str, is_active: bool = True) -> None:
        with self._lock:
            self.subscriptions.append({
                "tenant_id": tenant_id,
                "event_name": event_name,
                "user_id": user_id,
                "is_active": is_active,
            })

    def set_effect_settings(
        self,
        tenant_id: UUID,
        effect_type: str,
        settings: dict[str, Any],
        priority: int = 0,
    ) -> None:
        with self._lock:
            self.settings.setdefault((tenant_id, effect_type), []).append((priority, dict(settings)))

    def add_entity(self, tenant_id: UUID, entity_type: str, entity_id: str, **columns: Any) -> None:
        """Register an entity row (user_id / created_by / owner_id columns)."""
        with self._lock:
            self.entities[(entity_type, str(entity_id))] = {"tenant_id": tenant_id, **columns}

    # --- Events and rules ---

    def get_event(self, event_id: UUID) -> SystemEvent | None:
        with self._lock:
            return self.events.get(event_id)

    def list_active_rule_rows(self, event_name: str) -> list[dict[str, Any]]:
        with self._lock:
            return [
                dict(row)
                for row in self.rule_rows
                if row.get("action_name", row.get("event_name")) == event_name and row.get("is_active", True)
            ]

    # --- Effect runs ---

    def get_effect_run(self, idempotency_key: str) -> EffectRun | None:
        with self._lock:
            run = self.runs.get(idempotency_key)
            return replace(run) if run else None

    def claim_effect_run(
        self,
        candidate: EffectRun,
        now: datetime,
        stale_before: datetime,
    ) -> EffectRun | None:
        with self._lock:
            existing = self.runs.get(candidate.idempotency_key)

            if existing is None:
                claimed = replace(candidate, status=EffectRunStatus.RUNNING, started_at=now)
            elif existing.status == EffectRunStatus.PENDING and (
                existing.next_retry_at is None or existing.next_retry_at <= now
            ):
                claimed = replace(
                    existing,
                    status=EffectRunStatus.RUNNING,
                    started_at=now,
                    effect_config=candidate.effect_config,
                    target_type=candidate.target_type,
                )
            elif existing.status == EffectRunStatus.RUNNING and (
                existing.started_at is None or existing.started_at < stale_before
            ):
                claimed = replace(existing, started_at=now)
            else:
                return None

            self.runs[candidate.idempotency_key] = claimed
            return replace(claimed)

    def upsert_effect_run(self, run: EffectRun) -> bool:
        with self._lock:
            existing = self.runs.get(run.idempotency_key)
            if existing is not None and existing.status == EffectRunStatus.COMPLETED:
                return False
            if existing is not None:
                # Keep the stored identity
                run = replace(run, id=existing.id)
            self.runs[run.idempotency_key] = replace(run)
            return True

    def list_pending_runs_for_retry(self, now: datetime, limit: int) -> list[EffectRun]:
        with self._lock:
            due = [
                run
                for run in self.runs.values()
                if run.status == EffectRunStatus.PENDING
                and run.next_retry_at is not None
                and run.next_retry_at <= now
            ]
        due.sort(key=lambda r: r.next_retry_at)
        return [replace(run) for run in due[:limit]]

    def list_stale_running_runs(self, stale_before: datetime, limit: int) -> list[EffectRun]:
        with self._lock:
            stale = [
                run
                for run in self.runs.values()
                if run.status == EffectRunStatus.RUNNING
                and (run.started_at is None or run.started_at < stale_before)
            ]
        stale.sort(key=lambda r: r.started_at or datetime.min.replace(tzinfo=timezone.utc))
        return [replace(run) for run in stale[:limit]]

    # --- Dead letters ---

    def insert_dead_letter(self, dead_letter: EffectDeadLetter) -> bool:
        with self._lock:
            if any(d.effect_run_id == dead_letter.effect_run_id for d in self.dead_letters):
                logger.warning(
                    f"Dead letter already recorded for run {dead_letter.effect_run_id}",
                    extra={"effect_run_id": str(dead_letter.effect_run_id)},
                )
                return False
            if dead_letter.created_at is None:
                dead_letter = replace(dead_letter, created_at=datetime.now(timezone.utc))
            self.dead_letters.append(dead_letter)
            return True

    def list_dead_letters(self, limit: int = 50, tenant_id: UUID | None = None) -> list[EffectDeadLetter]:
        with self._lock:
            letters = [d for d in self.dead_letters if tenant_id is None or d.tenant_id == tenant_id]
        letters.sort(key=lambda d: d.created_at, reverse=True)
        return letters[:limit]

    # --- Outbox ---

    def list_outbox_pending(self, limit: int) -> list[OutboxEntry]:
        with self._lock:
            pending = [e for e in self.outbox.values() if e.status == OutboxStatus.PENDING]
        pending.sort(key=lambda e: e.created_at or datetime.min.replace(tzinfo=timezone.utc))
        return [replace(e) for e in pending[:limit]]

    def claim_outbox_entry(self, event_id: UUID, now: datetime) -> bool:
        with self._lock:
            entry = self.outbox.get(event_id)
            if entry is None or entry.status != OutboxStatus.PENDING:
                return False
            entry.status = OutboxStatus.PROCESSING
            entry.last_attempt_at = now
            return True

    def update_outbox_status(self, event_id: UUID, status: OutboxStatus, now: datetime) -> None:
        with self._lock:
            entry = self.outbox.get(event_id)
            if entry is not None:
                entry.status = status
                entry.last_attempt_at = now

    # --- Tenant settings ---

    def get_effect_settings(self, tenant_id: UUID, effect_type: str) -> dict[str, Any]:
        with self._lock:
            rows = self.settings.get((tenant_id, effect_type))
            if not rows:
                return dict(DEFAULT_EFFECT_SETTINGS)
            _, settings = max(rows, key=lambda r: r[0])
            return dict(settings)

    # --- Audience lookups ---

    def _members(self, tenant_id: UUID, **match: Any) -> list[str]:
        with self._lock:
            users = [
                e["user_id"]
                for e in self.employees
                if e["company_id"] == tenant_id
                and e["is_active"]
                and e["user_id"]
                and all(e[k] == v for k, v in match.items())
            ]
        return list(dict.fromkeys(str(u) for u in users))

    def list_role_members(self, tenant_id: UUID, role: str) -> list[str]:
        return self._members(tenant_id, role=role)

    def list_team_members(self, tenant_id: UUID, team: str) -> list[str]:
        return self._members(tenant_id, team=team)

    def get_manager_user_id(self, tenant_id: UUID, user_id: str) -> str | None:
        with self._lock:
            employee = next(
                (e for e in self.employees if e["company_id"] == tenant_id and e["user_id"] == user_id),
                None,
            )
            if employee is None or employee["manager_id"] is None:
                return None
            manager = next(
                (e for e in self.employees if e["company_id"] == tenant_id and e["id"] == employee["manager_id"]),
                None,
            )
        return str(manager["user_id"]) if manager and manager["user_id"] else None

    def list_department_members(
        self,
        tenant_id: UUID,
        department: str,
        roles: tuple[str, ...],
    ) -> list[str]:
        members = self._members(tenant_id, department=department)
        with self._lock:
            in_role = {
                str(e["user_id"])
                for e in self.employees
                if e["company_id"] == tenant_id and e["department"] == department and e["role"] in roles
            }
        return [u for u in members if u in in_role]

    def get_entity_owner(self, tenant_id: UUID, entity_type: str, entity_id: str) -> str | None:
        with self._lock:
            entity = self.entities.get((entity_type, str(entity_id)))
        if entity is None or entity["tenant_id"] != tenant_id:
            return None
        for field_name in ENTITY_OWNER_FIELDS:
            if entity.get(field_name):
                return str(entity[field_name])
        return None

    def list_subscribers(self, tenant_id: UUID, event_name: str) -> list[str]:
        with self._lock:
            users = [
                s["user_id"]
                for s in self.subscriptions
                if s["tenant_id"] == tenant_id and s["event_name"] == event_name and s["is_active"]
            ]
        return list(dict.fromkeys(str(u) for u in users))
