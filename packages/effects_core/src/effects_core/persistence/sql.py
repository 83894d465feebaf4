"""
SQLAlchemy implementation of the effect repository.

Each write commits on its own so a crash between effects never loses the
state of effects already finished. Run and outbox transitions are
conditional UPDATEs; the affected row count says whether this caller won.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import MetaData, Table, and_, or_, select
from sqlalchemy.exc import IntegrityError, NoSuchTableError
from sqlalchemy.orm import Session

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.runs import EffectDeadLetter, EffectRun, OutboxEntry
from effects_core.contracts.types import EffectRunStatus, OutboxStatus
from effects_core.persistence.models import (
    EffectDeadLetterRow,
    EffectRunRow,
    EffectSettingRow,
    EmployeeRow,
    EventOutboxRow,
    EventSubscriptionRow,
    ImpactMatrixRow,
    SystemEventRow,
)
from effects_core.persistence.repo import (
    DEFAULT_EFFECT_SETTINGS,
    ENTITY_OWNER_FIELDS,
    EffectRepository,
)

logger = logging.getLogger(__name__)

_RUN_FIELDS = (
    "event_id",
    "tenant_id",
    "effect_type",
    "effect_config",
    "target_type",
    "status",
    "execution_mode",
    "attempts",
    "next_retry_at",
    "started_at",
    "completed_at",
    "result",
    "error_message",
)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _run_from_row(row: EffectRunRow) -> EffectRun:
    return EffectRun(
        id=row.id,
        event_id=row.event_id,
        tenant_id=row.tenant_id,
        effect_type=row.effect_type,
        idempotency_key=row.idempotency_key,
        effect_config=row.effect_config or {},
        target_type=row.target_type,
        status=EffectRunStatus(row.status),
        execution_mode=row.execution_mode,
        attempts=row.attempts,
        next_retry_at=_aware(row.next_retry_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        result=row.result,
        error_message=row.error_message,
    )


def _run_values(run: EffectRun) -> dict[str, Any]:
    values = {name: getattr(run, name) for name in _RUN_FIELDS}
    values["status"] = str(run.status)
    return values


def _dead_letter_from_row(row: EffectDeadLetterRow) -> EffectDeadLetter:
    return EffectDeadLetter(
        id=row.id,
        effect_run_id=row.effect_run_id,
        event_id=row.event_id,
        tenant_id=row.tenant_id,
        effect_type=row.effect_type,
        error_details=row.error_details or {},
        created_at=_aware(row.created_at),
    )


def _coerce(column, value: Any) -> Any:
    """Convert a lookup value to the python type of a reflected column."""
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if isinstance(value, python_type):
        return value
    try:
        return python_type(value)
    except (TypeError, ValueError):
        return value


def _distinct(values) -> list[str]:
    return list(dict.fromkeys(str(v) for v in values if v))


class SqlEffectRepository(EffectRepository):
    """
    Effect repository backed by a SQLAlchemy session.

    Args:
        db: Session (from basecore.db.get_db or a test sessionmaker)
        entity_tables: entity_type -> table name, for entity owner lookups.
            Types without a mapping have no resolvable owner.
    """

    def __init__(self, db: Session, entity_tables: dict[str, str] | None = None):
        self.db = db
        self.entity_tables = dict(entity_tables or {})
        self._reflected: dict[str, Table] = {}

    def _commit(self) -> None:
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # --- Events and rules ---

    def get_event(self, event_id: UUID) -> SystemEvent | None:
        row = self.db.query(SystemEventRow).filter(SystemEventRow.id == event_id).first()
        if row is None:
            return None
        return SystemEvent(
            id=row.id,
            event_name=row.event_name,
            tenant_id=row.tenant_id,
            actor_user_id=row.actor_user_id,
            actor_role=row.actor_role,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            module=row.module,
            payload=row.payload or {},
            context=row.context or {},
            correlation_id=row.correlation_id,
            occurred_at=_aware(row.occurred_at),
        )

    def list_active_rule_rows(self, event_name: str) -> list[dict[str, Any]]:
        rows = (
            self.db.query(ImpactMatrixRow)
            .filter(
                ImpactMatrixRow.event_name == event_name,
                ImpactMatrixRow.is_active.is_(True),
            )
            .order_by(ImpactMatrixRow.created_at)
            .all()
        )
        return [
            {
                "id": row.id,
                "event_name": row.event_name,
                "effect_type": row.effect_type,
                "effect_category": row.effect_category,
                "target_resolution_rule": row.target_resolution_rule,
                "conditions": row.conditions,
                "priority": row.priority,
                "execution_mode": row.execution_mode,
                "retry_policy": row.retry_policy,
                "failure_handling": row.failure_handling,
                "is_active": row.is_active,
            }
            for row in rows
        ]

    # --- Effect runs ---

    def get_effect_run(self, idempotency_key: str) -> EffectRun | None:
        row = (
            self.db.query(EffectRunRow)
            .filter(EffectRunRow.idempotency_key == idempotency_key)
            .first()
        )
        return _run_from_row(row) if row else None

    def claim_effect_run(
        self,
        candidate: EffectRun,
        now: datetime,
        stale_before: datetime,
    ) -> EffectRun | None:
        exists = (
            self.db.query(EffectRunRow.id)
            .filter(EffectRunRow.idempotency_key == candidate.idempotency_key)
            .first()
        )

        if exists is None:
            values = _run_values(candidate)
            values.update(status=str(EffectRunStatus.RUNNING), started_at=now)
            self.db.add(
                EffectRunRow(id=candidate.id, idempotency_key=candidate.idempotency_key, **values)
            )
            try:
                self.db.commit()
                return self.get_effect_run(candidate.idempotency_key)
            except IntegrityError:
                # Lost the insert race; fall through to the takeover path
                self.db.rollback()

        claimable = or_(
            and_(
                EffectRunRow.status == str(EffectRunStatus.PENDING),
                or_(EffectRunRow.next_retry_at.is_(None), EffectRunRow.next_retry_at <= now),
            ),
            and_(
                EffectRunRow.status == str(EffectRunStatus.RUNNING),
                or_(EffectRunRow.started_at.is_(None), EffectRunRow.started_at < stale_before),
            ),
        )
        updated = (
            self.db.query(EffectRunRow)
            .filter(EffectRunRow.idempotency_key == candidate.idempotency_key, claimable)
            .update(
                {
                    EffectRunRow.status: str(EffectRunStatus.RUNNING),
                    EffectRunRow.started_at: now,
                    EffectRunRow.effect_config: candidate.effect_config,
                    EffectRunRow.target_type: candidate.target_type,
                },
                synchronize_session=False,
            )
        )
        self._commit()

        if updated != 1:
            return None
        return self.get_effect_run(candidate.idempotency_key)

    def upsert_effect_run(self, run: EffectRun) -> bool:
        values = _run_values(run)
        updated = (
            self.db.query(EffectRunRow)
            .filter(
                EffectRunRow.idempotency_key == run.idempotency_key,
                EffectRunRow.status != str(EffectRunStatus.COMPLETED),
            )
            .update(
                {getattr(EffectRunRow, k): v for k, v in values.items()},
                synchronize_session=False,
            )
        )
        if updated:
            self._commit()
            return True

        if self.get_effect_run(run.idempotency_key) is not None:
            # Row exists but is completed
            self.db.rollback()
            return False

        self.db.add(EffectRunRow(id=run.id, idempotency_key=run.idempotency_key, **values))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self.upsert_effect_run(run)
        return True

    def list_pending_runs_for_retry(self, now: datetime, limit: int) -> list[EffectRun]:
        rows = (
            self.db.query(EffectRunRow)
            .filter(
                EffectRunRow.status == str(EffectRunStatus.PENDING),
                EffectRunRow.next_retry_at.isnot(None),
                EffectRunRow.next_retry_at <= now,
            )
            .order_by(EffectRunRow.next_retry_at)
            .limit(limit)
            .all()
        )
        return [_run_from_row(row) for row in rows]

    def list_stale_running_runs(self, stale_before: datetime, limit: int) -> list[EffectRun]:
        rows = (
            self.db.query(EffectRunRow)
            .filter(
                EffectRunRow.status == str(EffectRunStatus.RUNNING),
                or_(EffectRunRow.started_at.is_(None), EffectRunRow.started_at < stale_before),
            )
            .order_by(EffectRunRow.started_at)
            .limit(limit)
            .all()
        )
        return [_run_from_row(row) for row in rows]

    # --- Dead letters ---

    def insert_dead_letter(self, dead_letter: EffectDeadLetter) -> bool:
        row = EffectDeadLetterRow(
            id=dead_letter.id,
            effect_run_id=dead_letter.effect_run_id,
            event_id=dead_letter.event_id,
            tenant_id=dead_letter.tenant_id,
            effect_type=dead_letter.effect_type,
            error_details=dead_letter.error_details,
        )
        if dead_letter.created_at is not None:
            row.created_at = dead_letter.created_at
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(
                f"Dead letter already recorded for run {dead_letter.effect_run_id}",
                extra={"effect_run_id": str(dead_letter.effect_run_id)},
            )
            return False
        return True

    def list_dead_letters(self, limit: int = 50, tenant_id: UUID | None = None) -> list[EffectDeadLetter]:
        query = self.db.query(EffectDeadLetterRow)
        if tenant_id is not None:
            query = query.filter(EffectDeadLetterRow.tenant_id == tenant_id)
        rows = query.order_by(EffectDeadLetterRow.created_at.desc()).limit(limit).all()
        return [_dead_letter_from_row(row) for row in rows]

    # --- Outbox ---

    def list_outbox_pending(self, limit: int) -> list[OutboxEntry]:
        rows = (
            self.db.query(EventOutboxRow)
            .filter(EventOutboxRow.status == str(OutboxStatus.PENDING))
            .order_by(EventOutboxRow.created_at)
            .limit(limit)
            .all()
        )
        return [
            OutboxEntry(
                event_id=row.event_id,
                status=OutboxStatus(row.status),
                created_at=_aware(row.created_at),
                last_attempt_at=_aware(row.last_attempt_at),
            )
            for row in rows
        ]

    def claim_outbox_entry(self, event_id: UUID, now: datetime) -> bool:
        updated = (
            self.db.query(EventOutboxRow)
            .filter(
                EventOutboxRow.event_id == event_id,
                EventOutboxRow.status == str(OutboxStatus.PENDING),
            )
            .update(
                {
                    EventOutboxRow.status: str(OutboxStatus.PROCESSING),
                    EventOutboxRow.last_attempt_at: now,
                },
                synchronize_session=False,
            )
        )
        self._commit()
        return updated == 1

    def update_outbox_status(self, event_id: UUID, status: OutboxStatus, now: datetime) -> None:
        (
            self.db.query(EventOutboxRow)
            .filter(EventOutboxRow.event_id == event_id)
            .update(
                {EventOutboxRow.status: str(status), EventOutboxRow.last_attempt_at: now},
                synchronize_session=False,
            )
        )
        self._commit()

    # --- Tenant settings ---

    def get_effect_settings(self, tenant_id: UUID, effect_type: str) -> dict[str, Any]:
        row = (
            self.db.query(EffectSettingRow)
            .filter(
                EffectSettingRow.tenant_id == tenant_id,
                EffectSettingRow.effect_type == effect_type,
            )
            .order_by(EffectSettingRow.priority.desc())
            .first()
        )
        if row is None:
            return dict(DEFAULT_EFFECT_SETTINGS)
        return dict(row.settings or {})

    # --- Audience lookups ---

    def _employees(self, tenant_id: UUID):
        return self.db.query(EmployeeRow.user_id).filter(
            EmployeeRow.company_id == tenant_id,
            EmployeeRow.is_active.is_(True),
            EmployeeRow.user_id.isnot(None),
        )

    def list_role_members(self, tenant_id: UUID, role: str) -> list[str]:
        rows = self._employees(tenant_id).filter(EmployeeRow.role == role).all()
        return _distinct(row.user_id for row in rows)

    def list_team_members(self, tenant_id: UUID, team: str) -> list[str]:
        rows = self._employees(tenant_id).filter(EmployeeRow.team == team).all()
        return _distinct(row.user_id for row in rows)

    def get_manager_user_id(self, tenant_id: UUID, user_id: str) -> str | None:
        employee = (
            self.db.query(EmployeeRow)
            .filter(EmployeeRow.company_id == tenant_id, EmployeeRow.user_id == user_id)
            .first()
        )
        if employee is None or employee.manager_id is None:
            return None

        manager = (
            self.db.query(EmployeeRow)
            .filter(EmployeeRow.company_id == tenant_id, EmployeeRow.id == employee.manager_id)
            .first()
        )
        return manager.user_id if manager and manager.user_id else None

    def list_department_members(
        self,
        tenant_id: UUID,
        department: str,
        roles: tuple[str, ...],
    ) -> list[str]:
        query = self._employees(tenant_id).filter(
            EmployeeRow.department == department,
            EmployeeRow.role.in_(list(roles)),
        )
        return _distinct(row.user_id for row in query.all())

    def _entity_table(self, entity_type: str) -> Table | None:
        table_name = self.entity_tables.get(entity_type)
        if table_name is None:
            return None
        if table_name not in self._reflected:
            try:
                self._reflected[table_name] = Table(
                    table_name, MetaData(), autoload_with=self.db.get_bind()
                )
            except NoSuchTableError:
                logger.warning(
                    f"Entity table {table_name} does not exist",
                    extra={"entity_type": entity_type, "table": table_name},
                )
                return None
        return self._reflected[table_name]

    def get_entity_owner(self, tenant_id: UUID, entity_type: str, entity_id: str) -> str | None:
        table = self._entity_table(entity_type)
        if table is None:
            logger.debug(f"No entity table mapped for {entity_type}")
            return None

        tenant_column = table.c.get("company_id")
        if tenant_column is None:
            tenant_column = table.c.get("tenant_id")
        if tenant_column is None or "id" not in table.c:
            logger.warning(
                f"Entity table {table.name} is not tenant scoped, owner lookup skipped",
                extra={"entity_type": entity_type, "table": table.name},
            )
            return None

        owner_columns = [table.c[name] for name in ENTITY_OWNER_FIELDS if name in table.c]
        if not owner_columns:
            return None

        id_column = table.c["id"]
        row = self.db.execute(
            select(*owner_columns).where(
                id_column == _coerce(id_column, entity_id),
                tenant_column == _coerce(tenant_column, tenant_id),
            )
        ).first()
        if row is None:
            return None

        for value in row:
            if value:
                return str(value)
        return None

    def list_subscribers(self, tenant_id: UUID, event_name: str) -> list[str]:
        rows = (
            self.db.query(EventSubscriptionRow.user_id)
            .filter(
                EventSubscriptionRow.tenant_id == tenant_id,
                EventSubscriptionRow.event_name == event_name,
                EventSubscriptionRow.is_active.is_(True),
            )
            .all()
        )
        return _distinct(row.user_id for row in rows)
