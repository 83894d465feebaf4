"""
Tests for audience resolution.
"""

from uuid import uuid4

import pytest

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import EffectRule
from effects_core.targets import TargetResolver


def _rule(target: dict | None) -> EffectRule:
    return EffectRule(
        event_name="absence.approved",
        effect_type="notification.in_app",
        target_resolution_rule=target,
    )


class TestTargetResolver:
    """Tests for TargetResolver."""

    @pytest.fixture
    def resolver(self, repo):
        return TargetResolver(repo)

    @pytest.fixture
    def event(self, tenant_id):
        return SystemEvent(
            id=uuid4(),
            event_name="absence.approved",
            tenant_id=tenant_id,
            actor_user_id="user-actor",
            entity_type="absence_requests",
            entity_id="42",
            payload={"assigned_user_id": "user-assignee", "user_id": "user-employee"},
        )

    def test_no_rule_means_no_targets(self, resolver, event):
        assert resolver.resolve(event, _rule(None)) == []

    def test_assigned_user(self, resolver, event):
        assert resolver.resolve(event, _rule({"type": "assigned_user"})) == ["user-assignee"]

    def test_assigned_user_missing(self, resolver, tenant_id):
        event = SystemEvent(id=uuid4(), event_name="x", tenant_id=tenant_id)
        assert resolver.resolve(event, _rule({"type": "assigned_user"})) == []

    def test_actor(self, resolver, event):
        assert resolver.resolve(event, _rule({"type": "actor"})) == ["user-actor"]

    def test_role_members_are_tenant_scoped(self, resolver, repo, event, tenant_id, other_tenant_id):
        repo.add_employee(tenant_id, "user-hr-1", role="hr")
        repo.add_employee(tenant_id, "user-hr-2", role="hr")
        repo.add_employee(tenant_id, "user-dev", role="developer")
        repo.add_employee(tenant_id, "user-hr-gone", role="hr", is_active=False)
        repo.add_employee(other_tenant_id, "user-hr-other", role="hr")

        targets = resolver.resolve(event, _rule({"type": "role", "role_name": "hr"}))

        assert targets == ["user-hr-1", "user-hr-2"]

    def test_targets_are_deduplicated(self, resolver, repo, event, tenant_id):
        repo.add_employee(tenant_id, "user-hr-1", role="hr")
        repo.add_employee(tenant_id, "user-hr-1", role="hr")
        repo.add_employee(tenant_id, None, role="hr")

        assert resolver.resolve(event, _rule({"type": "role", "role_name": "hr"})) == ["user-hr-1"]

    def test_team_from_payload_overrides_rule(self, resolver, repo, tenant_id):
        repo.add_employee(tenant_id, "user-a", team="alpha")
        repo.add_employee(tenant_id, "user-b", team="beta")
        event = SystemEvent(
            id=uuid4(), event_name="x", tenant_id=tenant_id, payload={"team_id": "beta"}
        )

        assert resolver.resolve(event, _rule({"type": "team", "team_id": "alpha"})) == ["user-b"]

    def test_team_from_rule(self, resolver, repo, event, tenant_id):
        repo.add_employee(tenant_id, "user-a", team="alpha")
        assert resolver.resolve(event, _rule({"type": "team", "team_id": "alpha"})) == ["user-a"]

    def test_team_without_team_id(self, resolver, event):
        assert resolver.resolve(event, _rule({"type": "team"})) == []

    def test_manager_of_payload_user(self, resolver, repo, event, tenant_id):
        boss_id = repo.add_employee(tenant_id, "user-boss", role="manager")
        repo.add_employee(tenant_id, "user-employee", manager_id=boss_id)

        assert resolver.resolve(event, _rule({"type": "manager"})) == ["user-boss"]

    def test_manager_falls_back_to_actor(self, resolver, repo, tenant_id):
        boss_id = repo.add_employee(tenant_id, "user-boss")
        repo.add_employee(tenant_id, "user-actor", manager_id=boss_id)
        event = SystemEvent(id=uuid4(), event_name="x", tenant_id=tenant_id, actor_user_id="user-actor")

        assert resolver.resolve(event, _rule({"type": "manager"})) == ["user-boss"]

    def test_manager_missing(self, resolver, repo, event, tenant_id):
        repo.add_employee(tenant_id, "user-employee")
        assert resolver.resolve(event, _rule({"type": "manager"})) == []

    def test_department_admins(self, resolver, repo, tenant_id):
        repo.add_employee(tenant_id, "user-admin", role="admin", department="ops")
        repo.add_employee(tenant_id, "user-hr", role="hr", department="ops")
        repo.add_employee(tenant_id, "user-dev", role="developer", department="ops")
        repo.add_employee(tenant_id, "user-admin-sales", role="admin", department="sales")
        event = SystemEvent(
            id=uuid4(), event_name="x", tenant_id=tenant_id, payload={"department": "ops"}
        )

        targets = resolver.resolve(event, _rule({"type": "department_admins"}))

        assert targets == ["user-admin", "user-hr"]

    def test_department_admins_custom_roles(self, resolver, repo, event, tenant_id):
        repo.add_employee(tenant_id, "user-admin", role="admin", department="ops")
        repo.add_employee(tenant_id, "user-lead", role="lead", department="ops")

        rule = _rule({"type": "department_admins", "department": "ops", "roles": ["lead"]})

        assert resolver.resolve(event, rule) == ["user-lead"]

    def test_department_admins_without_department(self, resolver, repo, event, tenant_id):
        repo.add_employee(tenant_id, "user-admin", role="admin", department="ops")
        assert resolver.resolve(event, _rule({"type": "department_admins"})) == []

    def test_entity_owner(self, resolver, repo, event, tenant_id):
        repo.add_entity(tenant_id, "absence_requests", "42", created_by="user-owner")
        assert resolver.resolve(event, _rule({"type": "entity_owner"})) == ["user-owner"]

    def test_entity_owner_prefers_user_id(self, resolver, repo, event, tenant_id):
        repo.add_entity(tenant_id, "absence_requests", "42", user_id="user-1", created_by="user-2")
        assert resolver.resolve(event, _rule({"type": "entity_owner"})) == ["user-1"]

    def test_entity_owner_other_tenant(self, resolver, repo, event, other_tenant_id):
        repo.add_entity(other_tenant_id, "absence_requests", "42", user_id="user-1")
        assert resolver.resolve(event, _rule({"type": "entity_owner"})) == []

    def test_entity_owner_without_entity(self, resolver, tenant_id):
        event = SystemEvent(id=uuid4(), event_name="x", tenant_id=tenant_id)
        assert resolver.resolve(event, _rule({"type": "entity_owner"})) == []

    def test_subscribers(self, resolver, repo, event, tenant_id, other_tenant_id):
        repo.add_subscription(tenant_id, "absence.approved", "user-s1")
        repo.add_subscription(tenant_id, "absence.approved", "user-s2", is_active=False)
        repo.add_subscription(tenant_id, "absence.rejected", "user-s3")
        repo.add_subscription(other_tenant_id, "absence.approved", "user-s4")

        assert resolver.resolve(event, _rule({"type": "subscribers"})) == ["user-s1"]

    def test_repository_errors_propagate(self, resolver, repo, event, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("database down")

        monkeypatch.setattr(repo, "list_role_members", broken)

        with pytest.raises(RuntimeError):
            resolver.resolve(event, _rule({"type": "role", "role_name": "hr"}))
