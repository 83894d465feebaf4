"""
Idempotency Guard

One effect runs at most once successfully per event. The key for a run is
derived from the event id and the effect type; the effect_runs table has a
unique constraint on it and every status change goes through a
compare-and-swap in the repository.
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import EffectRule
from effects_core.contracts.runs import EffectRun
from effects_core.contracts.types import EffectRunStatus, SkipReason
from effects_core.persistence.repo import EffectRepository

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "::"


def idempotency_key(event_id: UUID | str, effect_type: str) -> str:
    """Stable key for one (event, effect type) pair."""
    return f"{event_id}{KEY_SEPARATOR}{effect_type}"


class IdempotencyGuard:
    """Checks and claims effect runs through the repository."""

    def __init__(self, repo: EffectRepository, stale_after: timedelta = timedelta(minutes=15)):
        self.repo = repo
        self.stale_after = stale_after

    def is_completed(self, key: str) -> bool:
        run = self.repo.get_effect_run(key)
        return run is not None and run.status == EffectRunStatus.COMPLETED

    def claim(
        self,
        event: SystemEvent,
        rule: EffectRule,
        now: datetime,
    ) -> tuple[EffectRun | None, SkipReason | None]:
        """
        Create or fetch the run for (event, rule) and mark it running.

        Returns:
            (run, None) if this caller owns the attempt,
            (None, reason) if the run is finished or owned elsewhere
        """
        key = idempotency_key(event.id, rule.effect_type)
        candidate = EffectRun(
            event_id=event.id,
            tenant_id=event.tenant_id,
            effect_type=rule.effect_type,
            idempotency_key=key,
            effect_config=rule.snapshot(),
            target_type=rule.target_type,
            execution_mode=rule.execution_mode.value,
        )

        claimed = self.repo.claim_effect_run(candidate, now=now, stale_before=now - self.stale_after)
        if claimed is not None:
            return claimed, None

        existing = self.repo.get_effect_run(key)
        reason = _reason_for(existing)
        logger.info(
            f"Effect run not claimed: {key} ({reason})",
            extra={"idempotency_key": key, "reason": str(reason)},
        )
        return None, reason


def _reason_for(run: EffectRun | None) -> SkipReason:
    if run is None or run.status == EffectRunStatus.RUNNING:
        return SkipReason.IN_PROGRESS
    if run.status == EffectRunStatus.COMPLETED:
        return SkipReason.ALREADY_PROCESSED
    if run.status == EffectRunStatus.FAILED:
        return SkipReason.ALREADY_FAILED
    if run.status == EffectRunStatus.SKIPPED:
        return SkipReason.ALREADY_SKIPPED
    return SkipReason.NOT_DUE
