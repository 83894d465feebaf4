"""
Tests for the SQLAlchemy effect repository (SQLite in memory).
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import Column, MetaData, String, Table, create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from effects_core.contracts.runs import EffectDeadLetter, EffectRun
from effects_core.contracts.types import EffectRunStatus, OutboxStatus
from effects_core.dispatch import DispatchEngine
from effects_core.idempotency import idempotency_key
from effects_core.persistence.models import (
    EffectSettingRow,
    EffectsBase,
    EmployeeRow,
    EventOutboxRow,
    EventSubscriptionRow,
    ImpactMatrixRow,
    SystemEventRow,
)
from effects_core.persistence.sql import SqlEffectRepository
from effects_core.service import create_tables

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(engine)
    yield engine
    EffectsBase.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(db_engine):
    session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def sql_repo(db):
    return SqlEffectRepository(db, entity_tables={"absence_requests": "absence_requests"})


@pytest.fixture
def add_event(db, tenant_id):
    def _add(event_name: str = "absence.approved", created_at: datetime = NOW, **fields):
        event_id = uuid4()
        db.add(SystemEventRow(
            id=event_id,
            tenant_id=fields.pop("tenant_id", tenant_id),
            event_name=event_name,
            occurred_at=created_at,
            **fields,
        ))
        db.add(EventOutboxRow(event_id=event_id, status="pending", created_at=created_at))
        db.commit()
        return event_id

    return _add


def _candidate(event_id, tenant_id, effect_type: str = "notification.email") -> EffectRun:
    return EffectRun(
        event_id=event_id,
        tenant_id=tenant_id,
        effect_type=effect_type,
        idempotency_key=idempotency_key(event_id, effect_type),
        effect_config={"effect_type": effect_type},
        target_type="actor",
    )


class TestEventsAndRules:
    """Tests for event and rule loading."""

    def test_get_event(self, sql_repo, add_event, tenant_id):
        event_id = add_event(
            actor_user_id="user-1",
            entity_type="absence_requests",
            entity_id="42",
            payload={"status": "approved"},
        )

        event = sql_repo.get_event(event_id)

        assert event.id == event_id
        assert event.tenant_id == tenant_id
        assert event.payload == {"status": "approved"}
        assert event.occurred_at == NOW

    def test_get_missing_event(self, sql_repo):
        assert sql_repo.get_event(uuid4()) is None

    def test_active_rules(self, sql_repo, db):
        db.add(ImpactMatrixRow(
            event_name="absence.approved",
            effect_type="notification.in_app",
            target_resolution_rule={"type": "assigned_user"},
            conditions={"status_is": "approved"},
            retry_policy={"max_attempts": 5},
        ))
        db.add(ImpactMatrixRow(event_name="absence.approved", effect_type="task.create", is_active=False))
        db.add(ImpactMatrixRow(event_name="absence.rejected", effect_type="notification.email"))
        db.commit()

        rules = sql_repo.list_active_rules_for_event("absence.approved")

        assert [r.effect_type for r in rules] == ["notification.in_app"]
        assert rules[0].target_type == "assigned_user"
        assert rules[0].retry_policy.max_attempts == 5
        assert sql_repo.get_rule("absence.approved", "notification.in_app") == rules[0]
        assert sql_repo.get_rule("absence.approved", "task.create") is None


class TestEffectRuns:
    """Tests for run claims and upserts."""

    def test_claim_creates_running_run(self, sql_repo, tenant_id):
        event_id = uuid4()

        run = sql_repo.claim_effect_run(_candidate(event_id, tenant_id), NOW, NOW - timedelta(minutes=15))

        assert run.status == EffectRunStatus.RUNNING
        assert run.started_at == NOW
        assert run.attempts == 0
        assert run.effect_config == {"effect_type": "notification.email"}

    def test_second_claim_loses(self, sql_repo, tenant_id):
        candidate = _candidate(uuid4(), tenant_id)
        sql_repo.claim_effect_run(candidate, NOW, NOW - timedelta(minutes=15))

        assert sql_repo.claim_effect_run(candidate, NOW, NOW - timedelta(minutes=15)) is None

    def test_stale_claim_is_taken_over(self, sql_repo, tenant_id):
        candidate = _candidate(uuid4(), tenant_id)
        sql_repo.claim_effect_run(candidate, NOW, NOW - timedelta(minutes=15))
        later = NOW + timedelta(minutes=20)

        run = sql_repo.claim_effect_run(candidate, later, later - timedelta(minutes=15))

        assert run is not None
        assert run.started_at == later

    def test_pending_run_claimable_once_due(self, sql_repo, tenant_id):
        candidate = _candidate(uuid4(), tenant_id)
        run = sql_repo.claim_effect_run(candidate, NOW, NOW - timedelta(minutes=15))
        sql_repo.upsert_effect_run(
            run.copy(status=EffectRunStatus.PENDING, attempts=1, next_retry_at=NOW + timedelta(seconds=60))
        )

        early = NOW + timedelta(seconds=30)
        assert sql_repo.claim_effect_run(candidate, early, early - timedelta(minutes=15)) is None

        due = NOW + timedelta(seconds=60)
        claimed = sql_repo.claim_effect_run(candidate, due, due - timedelta(minutes=15))
        assert claimed.status == EffectRunStatus.RUNNING
        assert claimed.attempts == 1

    def test_completed_run_is_never_overwritten(self, sql_repo, tenant_id):
        candidate = _candidate(uuid4(), tenant_id)
        run = sql_repo.claim_effect_run(candidate, NOW, NOW - timedelta(minutes=15))
        assert sql_repo.upsert_effect_run(run.copy(status=EffectRunStatus.COMPLETED, result={"ok": True}))

        assert sql_repo.upsert_effect_run(run.copy(status=EffectRunStatus.FAILED)) is False
        stored = sql_repo.get_effect_run(candidate.idempotency_key)
        assert stored.status == EffectRunStatus.COMPLETED
        assert stored.result == {"ok": True}

    def test_upsert_inserts_missing_run(self, sql_repo, tenant_id):
        run = _candidate(uuid4(), tenant_id).copy(status=EffectRunStatus.SKIPPED)

        assert sql_repo.upsert_effect_run(run) is True
        assert sql_repo.get_effect_run(run.idempotency_key).status == EffectRunStatus.SKIPPED

    def test_due_and_stale_sweeps(self, sql_repo, tenant_id):
        due = _candidate(uuid4(), tenant_id).copy(
            status=EffectRunStatus.PENDING, attempts=1, next_retry_at=NOW - timedelta(seconds=1)
        )
        later = _candidate(uuid4(), tenant_id).copy(
            status=EffectRunStatus.PENDING, attempts=1, next_retry_at=NOW + timedelta(hours=1)
        )
        stuck = _candidate(uuid4(), tenant_id).copy(
            status=EffectRunStatus.RUNNING, started_at=NOW - timedelta(hours=1)
        )
        busy = _candidate(uuid4(), tenant_id).copy(status=EffectRunStatus.RUNNING, started_at=NOW)
        for run in (due, later, stuck, busy):
            sql_repo.upsert_effect_run(run)

        retry = sql_repo.list_pending_runs_for_retry(NOW, limit=10)
        stale = sql_repo.list_stale_running_runs(NOW - timedelta(minutes=15), limit=10)

        assert [r.idempotency_key for r in retry] == [due.idempotency_key]
        assert [r.idempotency_key for r in stale] == [stuck.idempotency_key]


class TestDeadLettersAndOutbox:
    """Tests for dead letters and outbox transitions."""

    def test_dead_letter_written_once_per_run(self, sql_repo, tenant_id):
        run_id = uuid4()
        letter = EffectDeadLetter(
            effect_run_id=run_id,
            event_id=uuid4(),
            tenant_id=tenant_id,
            effect_type="notification.email",
            error_details={"message": "smtp down", "attempts": 3},
            created_at=NOW,
        )

        assert sql_repo.insert_dead_letter(letter) is True
        assert sql_repo.insert_dead_letter(EffectDeadLetter(
            effect_run_id=run_id,
            event_id=letter.event_id,
            effect_type="notification.email",
            error_details={"message": "again"},
        )) is False

        letters = sql_repo.list_dead_letters(tenant_id=tenant_id)
        assert len(letters) == 1
        assert letters[0].message == "smtp down"
        assert letters[0].attempts == 3
        assert sql_repo.list_dead_letters(tenant_id=uuid4()) == []

    def test_outbox_claim_is_exclusive(self, sql_repo, add_event):
        event_id = add_event()

        pending = sql_repo.list_outbox_pending(limit=10)
        assert [e.event_id for e in pending] == [event_id]

        assert sql_repo.claim_outbox_entry(event_id, NOW) is True
        assert sql_repo.claim_outbox_entry(event_id, NOW) is False
        assert sql_repo.list_outbox_pending(limit=10) == []

        sql_repo.update_outbox_status(event_id, OutboxStatus.PENDING, NOW)
        assert len(sql_repo.list_outbox_pending(limit=10)) == 1

    def test_outbox_oldest_first(self, sql_repo, add_event):
        newer = add_event(created_at=NOW)
        older = add_event(created_at=NOW - timedelta(hours=1))

        assert [e.event_id for e in sql_repo.list_outbox_pending(limit=10)] == [older, newer]


class TestLookups:
    """Tests for settings and audience lookups."""

    def test_effect_settings_highest_priority_wins(self, sql_repo, db, tenant_id):
        assert sql_repo.get_effect_settings(tenant_id, "notification.email") == {"enabled": True}

        db.add(EffectSettingRow(tenant_id=tenant_id, effect_type="notification.email",
                                settings={"enabled": True}, priority=1))
        db.add(EffectSettingRow(tenant_id=tenant_id, effect_type="notification.email",
                                settings={"enabled": False}, priority=5))
        db.commit()

        assert sql_repo.get_effect_settings(tenant_id, "notification.email") == {"enabled": False}

    def test_employee_lookups(self, sql_repo, db, tenant_id, other_tenant_id):
        boss = EmployeeRow(id=uuid4(), company_id=tenant_id, user_id="user-boss", role="admin", department="ops")
        db.add(boss)
        db.add(EmployeeRow(company_id=tenant_id, user_id="user-1", role="hr", team="alpha",
                           department="ops", manager_id=boss.id))
        db.add(EmployeeRow(company_id=tenant_id, user_id="user-2", role="hr", team="alpha", is_active=False))
        db.add(EmployeeRow(company_id=other_tenant_id, user_id="user-3", role="hr", team="alpha"))
        db.commit()

        assert sql_repo.list_role_members(tenant_id, "hr") == ["user-1"]
        assert sql_repo.list_team_members(tenant_id, "alpha") == ["user-1"]
        assert sql_repo.get_manager_user_id(tenant_id, "user-1") == "user-boss"
        assert sql_repo.get_manager_user_id(other_tenant_id, "user-1") is None
        assert sorted(sql_repo.list_department_members(tenant_id, "ops", ("admin", "hr"))) == [
            "user-1",
            "user-boss",
        ]
        assert sql_repo.list_department_members(tenant_id, "ops", ("manager",)) == []

    def test_subscribers(self, sql_repo, db, tenant_id):
        db.add(EventSubscriptionRow(tenant_id=tenant_id, event_name="absence.approved", user_id="user-1"))
        db.add(EventSubscriptionRow(tenant_id=tenant_id, event_name="absence.approved", user_id="user-2",
                                    is_active=False))
        db.commit()

        assert sql_repo.list_subscribers(tenant_id, "absence.approved") == ["user-1"]

    def test_entity_owner(self, sql_repo, db, db_engine, tenant_id, other_tenant_id):
        absence_requests = Table(
            "absence_requests",
            MetaData(),
            Column("id", String(36), primary_key=True),
            Column("company_id", String(36)),
            Column("created_by", String(64)),
        )
        absence_requests.create(db_engine)
        db.execute(absence_requests.insert().values(id="42", company_id=str(tenant_id), created_by="user-owner"))
        db.commit()

        assert sql_repo.get_entity_owner(tenant_id, "absence_requests", "42") == "user-owner"
        assert sql_repo.get_entity_owner(other_tenant_id, "absence_requests", "42") is None
        assert sql_repo.get_entity_owner(tenant_id, "absence_requests", "43") is None
        assert sql_repo.get_entity_owner(tenant_id, "timesheets", "42") is None

    def test_unknown_entity_table(self, db, tenant_id):
        repo = SqlEffectRepository(db, entity_tables={"absence_requests": "no_such_table"})
        assert repo.get_entity_owner(tenant_id, "absence_requests", "42") is None


class TestEngineOnSql:
    """End-to-end dispatch against the SQL repository."""

    def test_process_and_replay(self, sql_repo, db, add_event, registry, make_handler, tenant_id):
        handler = make_handler()
        registry.register("notification.in_app", handler)
        db.add(ImpactMatrixRow(
            event_name="absence.approved",
            effect_type="notification.in_app",
            target_resolution_rule={"type": "actor"},
        ))
        db.commit()
        event_id = add_event(actor_user_id="user-actor")
        engine = DispatchEngine(sql_repo, registry, clock=lambda: NOW, handler_timeout=None)

        first = engine.process_event(event_id)
        second = engine.process_event(event_id)

        assert first.completed == 1
        assert second.skipped == 1
        assert len(handler.calls) == 1
        assert handler.calls[0].targets == ["user-actor"]
        run = sql_repo.get_effect_run(idempotency_key(event_id, "notification.in_app"))
        assert run.status == EffectRunStatus.COMPLETED
        assert run.result == {"delivered": 1}
        assert sql_repo.list_outbox_pending(limit=10) == []
