"""
Dispatch Engine

Processes one event end-to-end against every active impact matrix rule
for its name:

1. Skip effects already completed for this event (idempotency key)
2. Gate on the rule's conditions and the tenant's effect settings
3. Resolve the audience
4. Claim the effect run (compare-and-swap, status running)
5. Invoke the registered handler, bounded by a timeout
6. Record completion, or hand the failure to the retry scheduler

Effects are independent: an exception in one is caught at the effect
boundary and reported, and the remaining effects still run. All
processing is sequential within one call.
"""

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from effects_core.conditions import matches
from effects_core.contracts.event import SystemEvent
from effects_core.contracts.rules import EffectRule
from effects_core.contracts.runs import EffectDeadLetter, EffectRun
from effects_core.contracts.types import EffectRunStatus, OutboxStatus, SkipReason
from effects_core.errors import EventNotFoundError, HandlerTimeoutError
from effects_core.handlers.base import EffectContext, EffectHandler, EffectResult
from effects_core.handlers.registry import HandlerRegistry
from effects_core.idempotency import IdempotencyGuard, idempotency_key
from effects_core.persistence.repo import EffectRepository
from effects_core.retry import RetryScheduler
from effects_core.targets import TargetResolver

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeStatus(str, Enum):
    """What happened to one effect during one dispatch."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"

    def __str__(self) -> str:
        return self.value


class DeadLetterSink(Protocol):
    """Receives dead letters after they are stored (alerting)."""

    def publish(self, dead_letter: EffectDeadLetter) -> Any:
        ...


@dataclass
class EffectOutcome:
    """Result of processing one rule for one event."""

    effect_type: str
    status: OutcomeStatus
    reason: str | None = None
    error: str | None = None
    result: Any = None
    attempts: int = 0
    next_retry_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    @classmethod
    def skipped(cls, effect_type: str, reason: SkipReason) -> "EffectOutcome":
        return cls(effect_type=effect_type, status=OutcomeStatus.SKIPPED, reason=str(reason))

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "effectType": self.effect_type,
            "status": str(self.status),
            "success": self.success,
        }
        if self.status == OutcomeStatus.SKIPPED:
            data["skipped"] = True
            data["reason"] = self.reason
        if self.error is not None:
            data["error"] = self.error
        if self.result is not None:
            data["result"] = self.result
        if self.attempts:
            data["attempts"] = self.attempts
        if self.next_retry_at is not None:
            data["nextRetryAt"] = self.next_retry_at.isoformat()
        return data


@dataclass
class EventReport:
    """Aggregate outcome of processing one event."""

    event_id: UUID
    outcomes: list[EffectOutcome] = field(default_factory=list)

    def _count(self, *statuses: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status in statuses)

    @property
    def completed(self) -> int:
        return self._count(OutcomeStatus.COMPLETED)

    @property
    def skipped(self) -> int:
        return self._count(OutcomeStatus.SKIPPED)

    @property
    def failed(self) -> int:
        """Effects whose handler failed this time (including those that will retry)."""
        return self._count(OutcomeStatus.FAILED, OutcomeStatus.RETRY_SCHEDULED)

    @property
    def retry_scheduled(self) -> int:
        return self._count(OutcomeStatus.RETRY_SCHEDULED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "eventId": str(self.event_id),
            "effectsProcessed": len(self.outcomes),
            "completed": self.completed,
            "skipped": self.skipped,
            "failed": self.failed,
            "retryScheduled": self.retry_scheduled,
            "results": [o.to_dict() for o in self.outcomes],
        }


class DispatchEngine:
    """
    Turns system events into effect runs.

    Args:
        repo: Storage port
        registry: Effect type -> handler lookup
        retry_scheduler: Failure policy (default: per-rule retry policy)
        target_resolver: Audience resolution (default: repository backed)
        handler_timeout: Seconds a handler may run (None = unbounded)
        stale_after: Age after which a running run may be taken over
        clock: Returns the current UTC time
        dead_letter_sink: Optional alerting hook for new dead letters
    """

    def __init__(
        self,
        repo: EffectRepository,
        registry: HandlerRegistry,
        retry_scheduler: RetryScheduler | None = None,
        target_resolver: TargetResolver | None = None,
        handler_timeout: float | None = 30.0,
        stale_after: timedelta = timedelta(minutes=15),
        clock: Callable[[], datetime] = utcnow,
        dead_letter_sink: DeadLetterSink | None = None,
    ):
        self.repo = repo
        self.registry = registry
        self.retry_scheduler = retry_scheduler or RetryScheduler()
        self.target_resolver = target_resolver or TargetResolver(repo)
        self.handler_timeout = handler_timeout
        self.guard = IdempotencyGuard(repo, stale_after=stale_after)
        self.clock = clock
        self.dead_letter_sink = dead_letter_sink

    def process_event(self, event_id: UUID) -> EventReport:
        """
        Process every active rule for an event and close its outbox entry.

        Raises:
            EventNotFoundError: if the event does not exist
        """
        event = self.repo.get_event(event_id)
        if event is None:
            raise EventNotFoundError(event_id)

        rules = self.repo.list_active_rules_for_event(event.event_name)
        logger.info(
            f"Processing event {event.event_name} with {len(rules)} effects",
            extra={
                "event_id": str(event.id),
                "tenant_id": str(event.tenant_id),
                "event_name": event.event_name,
                "correlation_id": event.correlation_id,
            },
        )

        report = EventReport(event_id=event.id)
        for rule in rules:
            report.outcomes.append(self._process_effect_safely(event, rule))

        # The event is handled even if some effects failed; those are tracked per run
        self.repo.update_outbox_status(event.id, OutboxStatus.COMPLETED, self.clock())

        logger.info(
            f"Event {event.id} processed: {report.completed} completed, "
            f"{report.skipped} skipped, {report.failed} failed",
            extra={
                "event_id": str(event.id),
                "completed": report.completed,
                "skipped": report.skipped,
                "failed": report.failed,
            },
        )
        return report

    def _process_effect_safely(self, event: SystemEvent, rule: EffectRule) -> EffectOutcome:
        try:
            return self.process_effect(event, rule)
        except Exception as e:
            logger.error(
                f"Error processing effect {rule.effect_type} for event {event.id}: {e}",
                extra={"event_id": str(event.id), "effect_type": rule.effect_type},
                exc_info=True,
            )
            return EffectOutcome(
                effect_type=rule.effect_type,
                status=OutcomeStatus.FAILED,
                error=str(e) or e.__class__.__name__,
            )

    def process_effect(self, event: SystemEvent, rule: EffectRule) -> EffectOutcome:
        """
        Process one rule for one event.

        Repository errors propagate; handler errors never do.
        """
        effect_type = rule.effect_type
        key = idempotency_key(event.id, effect_type)
        log_extra = {"event_id": str(event.id), "effect_type": effect_type, "idempotency_key": key}

        if self.guard.is_completed(key):
            logger.info(f"Effect already processed: {key}", extra=log_extra)
            return EffectOutcome.skipped(effect_type, SkipReason.ALREADY_PROCESSED)

        if not matches(event, rule.conditions):
            logger.info(f"Conditions not met for effect {effect_type}", extra=log_extra)
            return EffectOutcome.skipped(effect_type, SkipReason.CONDITIONS_NOT_MET)

        settings = self.repo.get_effect_settings(event.tenant_id, effect_type)
        if settings.get("enabled", True) is False:
            logger.info(f"Effect {effect_type} disabled by tenant settings", extra=log_extra)
            return EffectOutcome.skipped(effect_type, SkipReason.DISABLED_BY_SETTINGS)

        targets = self.target_resolver.resolve(event, rule)

        run, reason = self.guard.claim(event, rule, self.clock())
        if run is None:
            return EffectOutcome.skipped(effect_type, reason)

        handler = self.registry.get(effect_type)
        if handler is None:
            logger.warning(f"No handler for effect type: {effect_type}", extra=log_extra)
            self.repo.upsert_effect_run(
                run.copy(
                    status=EffectRunStatus.SKIPPED,
                    completed_at=self.clock(),
                    error_message="No handler available",
                )
            )
            return EffectOutcome.skipped(effect_type, SkipReason.NO_HANDLER)

        context = EffectContext(event=event, rule=rule, targets=targets, settings=settings)
        try:
            result = EffectResult.coerce(self._invoke(handler, context))
        except Exception as e:
            logger.warning(
                f"Effect handler {effect_type} raised: {e}",
                extra=log_extra,
                exc_info=not isinstance(e, HandlerTimeoutError),
            )
            return self.fail_run(run, rule, str(e) or e.__class__.__name__)

        if not result.success:
            return self.fail_run(run, rule, result.error or "Unknown error")

        completed = run.copy(
            status=EffectRunStatus.COMPLETED,
            completed_at=self.clock(),
            result=result.data,
            next_retry_at=None,
            error_message=None,
        )
        self.repo.upsert_effect_run(completed)

        logger.info(
            f"Effect {effect_type} completed for {len(targets)} targets",
            extra={**log_extra, "target_count": len(targets)},
        )
        return EffectOutcome(
            effect_type=effect_type,
            status=OutcomeStatus.COMPLETED,
            result=result.data,
            attempts=run.attempts,
        )

    def _invoke(self, handler: EffectHandler, context: EffectContext) -> EffectResult:
        if self.handler_timeout is None:
            return handler.execute(context)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="effect-handler")
        try:
            future = executor.submit(handler.execute, context)
            try:
                return future.result(timeout=self.handler_timeout)
            except FutureTimeoutError:
                raise HandlerTimeoutError(context.rule.effect_type, self.handler_timeout)
        finally:
            # A timed-out handler thread is abandoned, not joined
            executor.shutdown(wait=False)

    def fail_run(self, run: EffectRun, rule: EffectRule, error: str) -> EffectOutcome:
        """Apply the retry policy to a failed attempt of a claimed run."""
        decision = self.retry_scheduler.apply(self.repo, run, rule, error, self.clock())

        if decision.run.status == EffectRunStatus.COMPLETED:
            return EffectOutcome(
                effect_type=rule.effect_type,
                status=OutcomeStatus.COMPLETED,
                result=decision.run.result,
                attempts=decision.run.attempts,
            )

        if decision.dead_letter is not None:
            self._publish_dead_letter(decision.dead_letter)
            return EffectOutcome(
                effect_type=rule.effect_type,
                status=OutcomeStatus.FAILED,
                error=error,
                attempts=decision.run.attempts,
            )

        return EffectOutcome(
            effect_type=rule.effect_type,
            status=OutcomeStatus.RETRY_SCHEDULED,
            error=error,
            attempts=decision.run.attempts,
            next_retry_at=decision.run.next_retry_at,
        )

    def _publish_dead_letter(self, dead_letter: EffectDeadLetter) -> None:
        if self.dead_letter_sink is None:
            return
        try:
            self.dead_letter_sink.publish(dead_letter)
        except Exception as e:
            # The dead letter is already stored; alerting is best effort
            logger.error(
                f"Failed to publish dead letter for run {dead_letter.effect_run_id}: {e}",
                extra={"effect_run_id": str(dead_letter.effect_run_id)},
                exc_info=True,
            )
