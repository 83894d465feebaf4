"""
Target Resolver

Computes the audience (user ids) of an effect from the event and the
rule's target_resolution_rule. Every lookup is scoped to the event's
tenant. Missing data yields an empty audience; repository errors propagate
to the caller so the effect is treated as failed.
"""

import logging
from collections.abc import Callable

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import (
    DepartmentAdminsTarget,
    EffectRule,
    RoleTarget,
    TeamTarget,
    TargetResolutionRule,
)
from effects_core.contracts.types import TargetKind
from effects_core.persistence.repo import EffectRepository

logger = logging.getLogger(__name__)


class TargetResolver:
    """Resolves effect audiences through the repository."""

    def __init__(self, repo: EffectRepository):
        self.repo = repo
        self._resolvers: dict[str, Callable[[SystemEvent, TargetResolutionRule], list[str]]] = {
            TargetKind.ASSIGNED_USER.value: self._assigned_user,
            TargetKind.ACTOR.value: self._actor,
            TargetKind.ROLE.value: self._role,
            TargetKind.TEAM.value: self._team,
            TargetKind.MANAGER.value: self._manager,
            TargetKind.DEPARTMENT_ADMINS.value: self._department_admins,
            TargetKind.ENTITY_OWNER.value: self._entity_owner,
            TargetKind.SUBSCRIBERS.value: self._subscribers,
        }

    def resolve(self, event: SystemEvent, rule: EffectRule) -> list[str]:
        """
        Resolve the user ids an effect is addressed to.

        Returns:
            Distinct user ids in first-seen order (possibly empty)
        """
        target = rule.target_resolution_rule
        if target is None:
            return []

        users = self._resolvers[target.type](event, target)
        targets = list(dict.fromkeys(u for u in users if u))

        logger.debug(
            f"Resolved {len(targets)} targets for {rule.effect_type}",
            extra={
                "event_id": str(event.id),
                "effect_type": rule.effect_type,
                "target_type": target.type,
                "target_count": len(targets),
            },
        )
        return targets

    def _assigned_user(self, event: SystemEvent, target: TargetResolutionRule) -> list[str]:
        user_id = event.assigned_user_id
        return [user_id] if user_id else []

    def _actor(self, event: SystemEvent, target: TargetResolutionRule) -> list[str]:
        return [event.actor_user_id] if event.actor_user_id else []

    def _role(self, event: SystemEvent, target: RoleTarget) -> list[str]:
        return self.repo.list_role_members(event.tenant_id, target.role_name)

    def _team(self, event: SystemEvent, target: TeamTarget) -> list[str]:
        team = event.payload.get("team_id") or target.team_id
        if not team:
            return []
        return self.repo.list_team_members(event.tenant_id, str(team))

    def _manager(self, event: SystemEvent, target: TargetResolutionRule) -> list[str]:
        # Manager of the user the event is about, else of whoever caused it
        subject = event.payload.get("user_id") or event.actor_user_id
        if not subject:
            return []
        manager = self.repo.get_manager_user_id(event.tenant_id, str(subject))
        return [manager] if manager else []

    def _department_admins(self, event: SystemEvent, target: DepartmentAdminsTarget) -> list[str]:
        department = event.payload.get("department") or target.department
        if not department:
            return []
        return self.repo.list_department_members(event.tenant_id, str(department), tuple(target.roles))

    def _entity_owner(self, event: SystemEvent, target: TargetResolutionRule) -> list[str]:
        if not event.entity_type or not event.entity_id:
            return []
        owner = self.repo.get_entity_owner(event.tenant_id, event.entity_type, event.entity_id)
        return [owner] if owner else []

    def _subscribers(self, event: SystemEvent, target: TargetResolutionRule) -> list[str]:
        return self.repo.list_subscribers(event.tenant_id, event.event_name)
