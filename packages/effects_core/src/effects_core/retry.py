"""
Retry Scheduler

Decides, after a failed handler invocation, whether an effect run gets
another attempt (status pending + next_retry_at) or is dead-lettered
(status failed + one effect_dead_letters row).

decide() is a pure state transition; apply() performs the single run
write and, for terminal failures, the single dead-letter write.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from effects_core.contracts.rules import EffectRule, RetryPolicy
from effects_core.contracts.runs import EffectDeadLetter, EffectRun
from effects_core.contracts.types import EffectRunStatus
from effects_core.persistence.repo import EffectRepository

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY = timedelta(seconds=60)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failure: the updated run and, if terminal, its dead letter."""

    run: EffectRun
    dead_letter: EffectDeadLetter | None = None

    @property
    def will_retry(self) -> bool:
        return self.dead_letter is None


def compute_delay(policy: RetryPolicy, attempt: int, base_delay: timedelta | None = None) -> timedelta:
    """
    Backoff delay before the next attempt.

    `attempt` is 1-based (first failure => attempt=1).
    """
    attempt = max(1, attempt)
    base = base_delay if base_delay is not None else timedelta(seconds=policy.base_delay_seconds)

    if policy.backoff == "fixed":
        return base
    if policy.backoff == "linear":
        return base * attempt
    return base * (2 ** (attempt - 1))


class RetryScheduler:
    """
    Applies a rule's retry policy to failed effect runs.

    Args:
        base_delay: Overrides the policy's base delay for every rule
            (None = use each rule's retry_policy.base_delay_seconds)
    """

    def __init__(self, base_delay: timedelta | None = None):
        self.base_delay = base_delay

    def decide(
        self,
        run: EffectRun,
        rule: EffectRule,
        error: str,
        now: datetime,
    ) -> RetryDecision:
        """Compute the post-failure state of a run without touching storage."""
        new_attempts = run.attempts + 1
        policy = rule.retry_policy

        if not rule.retries_enabled or new_attempts >= policy.max_attempts:
            failed = run.copy(
                status=EffectRunStatus.FAILED,
                attempts=new_attempts,
                next_retry_at=None,
                completed_at=now,
                error_message=error,
            )
            dead_letter = EffectDeadLetter(
                effect_run_id=run.id,
                event_id=run.event_id,
                tenant_id=run.tenant_id,
                effect_type=run.effect_type,
                error_details={"message": error, "attempts": new_attempts},
                created_at=now,
            )
            return RetryDecision(run=failed, dead_letter=dead_letter)

        delay = compute_delay(policy, new_attempts, self.base_delay)
        pending = run.copy(
            status=EffectRunStatus.PENDING,
            attempts=new_attempts,
            next_retry_at=now + delay,
            error_message=error,
        )
        return RetryDecision(run=pending)

    def apply(
        self,
        repo: EffectRepository,
        run: EffectRun,
        rule: EffectRule,
        error: str,
        now: datetime,
    ) -> RetryDecision:
        """Decide and persist the outcome of a failed attempt."""
        decision = self.decide(run, rule, error, now)

        written = repo.upsert_effect_run(decision.run)
        if not written:
            # Another worker completed the run meanwhile; completion wins
            logger.warning(
                f"Effect run {run.idempotency_key} completed concurrently, dropping failure",
                extra={"idempotency_key": run.idempotency_key},
            )
            return RetryDecision(run=repo.get_effect_run(run.idempotency_key) or decision.run)

        if decision.dead_letter is not None:
            repo.insert_dead_letter(decision.dead_letter)
            logger.error(
                f"Effect {run.effect_type} dead-lettered after {decision.run.attempts} attempts",
                extra={
                    "event_id": str(run.event_id),
                    "effect_type": run.effect_type,
                    "attempts": decision.run.attempts,
                    "error": error,
                },
            )
        else:
            logger.warning(
                f"Effect {run.effect_type} failed, retry at {decision.run.next_retry_at.isoformat()}",
                extra={
                    "event_id": str(run.event_id),
                    "effect_type": run.effect_type,
                    "attempts": decision.run.attempts,
                    "error": error,
                },
            )

        return decision
