"""
Repository contract for the dispatch engine.

The engine never talks to storage directly. Every read and write it needs
(events, rules, runs, dead letters, outbox, settings and audience lookups)
goes through an EffectRepository so it can be backed by SQLAlchemy in
production and by an in-memory store in tests.

Write methods that change run or outbox state are compare-and-swap
operations; callers act on their return value.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any
from uuid import UUID

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import EffectRule
from effects_core.contracts.runs import EffectDeadLetter, EffectRun, OutboxEntry
from effects_core.contracts.types import OutboxStatus
from effects_core.errors import RuleConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_EFFECT_SETTINGS: dict[str, Any] = {"enabled": True}

# Columns consulted, in order, to find an entity's owner
ENTITY_OWNER_FIELDS = ("user_id", "created_by", "owner_id")


class EffectRepository(ABC):
    """Storage port used by the dispatch engine, runner and resolvers."""

    # --- Events and rules ---

    @abstractmethod
    def get_event(self, event_id: UUID) -> SystemEvent | None:
        """Load a system event by id."""
        pass

    @abstractmethod
    def list_active_rule_rows(self, event_name: str) -> list[dict[str, Any]]:
        """Raw active impact matrix rows for an event name."""
        pass

    def list_active_rules_for_event(self, event_name: str) -> list[EffectRule]:
        """
        Active rules for an event name.

        Rows that fail validation are logged and left out so one bad row
        does not block the other effects of the event.
        """
        rules = []
        for row in self.list_active_rule_rows(event_name):
            try:
                rules.append(EffectRule.from_row(row))
            except RuleConfigurationError as e:
                logger.error(
                    f"Skipping invalid impact matrix row: {e}",
                    extra={"event_name": event_name, "rule_id": e.details.get("rule_id")},
                )
        return rules

    def get_rule(self, event_name: str, effect_type: str) -> EffectRule | None:
        """The active rule for (event name, effect type), if any."""
        for rule in self.list_active_rules_for_event(event_name):
            if rule.effect_type == effect_type:
                return rule
        return None

    # --- Effect runs ---

    @abstractmethod
    def get_effect_run(self, idempotency_key: str) -> EffectRun | None:
        pass

    @abstractmethod
    def claim_effect_run(
        self,
        candidate: EffectRun,
        now: datetime,
        stale_before: datetime,
    ) -> EffectRun | None:
        """
        Atomically create or take over the run for candidate.idempotency_key.

        The run is claimed (status running, started_at now) when:
        - no run exists for the key (candidate is inserted), or
        - the run is pending and next_retry_at is unset or due, or
        - the run is running but started before stale_before

        Returns:
            The claimed run, or None if the claim was lost
        """
        pass

    @abstractmethod
    def upsert_effect_run(self, run: EffectRun) -> bool:
        """
        Write a run by idempotency key.

        Never overwrites a completed run.

        Returns:
            False if the stored run was already completed
        """
        pass

    @abstractmethod
    def list_pending_runs_for_retry(self, now: datetime, limit: int) -> list[EffectRun]:
        """Pending runs whose next_retry_at has passed, oldest due first."""
        pass

    @abstractmethod
    def list_stale_running_runs(self, stale_before: datetime, limit: int) -> list[EffectRun]:
        """Running runs that started before stale_before."""
        pass

    # --- Dead letters ---

    @abstractmethod
    def insert_dead_letter(self, dead_letter: EffectDeadLetter) -> bool:
        """
        Record a terminal failure.

        Returns:
            False if a dead letter already exists for the run
        """
        pass

    @abstractmethod
    def list_dead_letters(self, limit: int = 50, tenant_id: UUID | None = None) -> list[EffectDeadLetter]:
        """Most recent dead letters first."""
        pass

    # --- Outbox ---

    @abstractmethod
    def list_outbox_pending(self, limit: int) -> list[OutboxEntry]:
        """Pending outbox entries, oldest first."""
        pass

    @abstractmethod
    def claim_outbox_entry(self, event_id: UUID, now: datetime) -> bool:
        """Move an entry from pending to processing. False if already taken."""
        pass

    @abstractmethod
    def update_outbox_status(self, event_id: UUID, status: OutboxStatus, now: datetime) -> None:
        pass

    # --- Tenant settings ---

    @abstractmethod
    def get_effect_settings(self, tenant_id: UUID, effect_type: str) -> dict[str, Any]:
        """Highest-priority settings for the effect, or {"enabled": True}."""
        pass

    # --- Audience lookups (all tenant scoped) ---

    @abstractmethod
    def list_role_members(self, tenant_id: UUID, role: str) -> list[str]:
        pass

    @abstractmethod
    def list_team_members(self, tenant_id: UUID, team: str) -> list[str]:
        pass

    @abstractmethod
    def get_manager_user_id(self, tenant_id: UUID, user_id: str) -> str | None:
        """User id of the manager of user_id's employee record."""
        pass

    @abstractmethod
    def list_department_members(
        self,
        tenant_id: UUID,
        department: str,
        roles: tuple[str, ...],
    ) -> list[str]:
        """Users of a department holding one of roles."""
        pass

    @abstractmethod
    def get_entity_owner(self, tenant_id: UUID, entity_type: str, entity_id: str) -> str | None:
        """Owner of an entity: its user_id, else created_by, else owner_id."""
        pass

    @abstractmethod
    def list_subscribers(self, tenant_id: UUID, event_name: str) -> list[str]:
        pass

