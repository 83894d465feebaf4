"""
Batch Runner

Drives the dispatch engine over bounded sets of work:
- process_batch: pending outbox entries, oldest first
- retry_failed_effects: pending runs whose retry time has come
- recover_stale_runs: runs left running by a crashed worker

Each item is isolated: an exception is logged, reported as
{"success": False, "error": ...} and the sweep moves on. A stop request
is honoured between items; the item in flight always finishes.
"""

import logging
import threading
from datetime import timedelta
from typing import Any

from effects_core.contracts.rules import EffectRule
from effects_core.contracts.runs import EffectRun
from effects_core.contracts.types import EffectRunStatus, OutboxStatus, SkipReason
from effects_core.dispatch import DispatchEngine, EffectOutcome
from effects_core.errors import EventNotFoundError, RuleConfigurationError

logger = logging.getLogger(__name__)

STALE_RUN_ERROR = "stale run recovered"

# Skip reasons that close a pending run during the retry sweep
_GATED_REASONS = {str(SkipReason.CONDITIONS_NOT_MET), str(SkipReason.DISABLED_BY_SETTINGS)}


class BatchRunner:
    """Sweeps over outbox entries and effect runs."""

    def __init__(self, engine: DispatchEngine):
        self.engine = engine
        self.repo = engine.repo
        self._stop = threading.Event()

    def request_stop(self) -> None:
        """Stop sweeps at the next item boundary."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _should_stop(self, sweep: str) -> bool:
        if self._stop.is_set():
            logger.info(f"Stop requested, ending {sweep} sweep early")
            return True
        return False

    # --- Outbox ---

    def process_batch(self, limit: int = 10) -> list[dict[str, Any]]:
        """
        Process up to `limit` pending outbox entries.

        Returns:
            One report dict per claimed entry
        """
        entries = self.repo.list_outbox_pending(limit)
        logger.info(f"Found {len(entries)} pending events", extra={"limit": limit})

        results = []
        for entry in entries:
            if self._should_stop("outbox"):
                break

            if not self.repo.claim_outbox_entry(entry.event_id, self.engine.clock()):
                logger.debug(f"Outbox entry {entry.event_id} taken by another runner")
                continue

            results.append(self._process_entry(entry.event_id))

        return results

    def _process_entry(self, event_id) -> dict[str, Any]:
        try:
            return self.engine.process_event(event_id).to_dict()
        except EventNotFoundError as e:
            # Nothing to redeliver
            logger.error(str(e), extra={"event_id": str(event_id)})
            self.repo.update_outbox_status(event_id, OutboxStatus.COMPLETED, self.engine.clock())
            return {"success": False, "eventId": str(event_id), "error": str(e)}
        except Exception as e:
            logger.error(
                f"Failed to process event {event_id}: {e}",
                extra={"event_id": str(event_id)},
                exc_info=True,
            )
            self._release_entry(event_id)
            return {"success": False, "eventId": str(event_id), "error": str(e) or e.__class__.__name__}

    def _release_entry(self, event_id) -> None:
        """Hand a failed entry back to the outbox for redelivery."""
        try:
            self.repo.update_outbox_status(event_id, OutboxStatus.PENDING, self.engine.clock())
        except Exception as e:
            logger.error(
                f"Could not release outbox entry {event_id}: {e}",
                extra={"event_id": str(event_id)},
                exc_info=True,
            )

    # --- Retries ---

    def retry_failed_effects(self, limit: int = 20) -> list[dict[str, Any]]:
        """Re-run effects whose next_retry_at has passed."""
        runs = self.repo.list_pending_runs_for_retry(self.engine.clock(), limit)
        logger.info(f"Found {len(runs)} effects to retry", extra={"limit": limit})

        results = []
        for run in runs:
            if self._should_stop("retry"):
                break
            results.append(self._retry_run(run))
        return results

    def _retry_run(self, run: EffectRun) -> dict[str, Any]:
        try:
            event = self.repo.get_event(run.event_id)
            if event is None:
                self._close_run(run, "Event not found")
                return {
                    "success": False,
                    "eventId": str(run.event_id),
                    "effectType": run.effect_type,
                    "error": "Event not found",
                }

            rule = self.repo.get_rule(event.event_name, run.effect_type)
            if rule is None:
                self._close_run(run, str(SkipReason.RULE_MISSING))
                outcome = EffectOutcome.skipped(run.effect_type, SkipReason.RULE_MISSING)
            else:
                outcome = self.engine.process_effect(event, rule)
                if outcome.reason in _GATED_REASONS:
                    # Gated before the claim, so the run is still pending
                    self._close_run(run, outcome.reason)
        except Exception as e:
            logger.error(
                f"Retry of {run.idempotency_key} failed: {e}",
                extra={"idempotency_key": run.idempotency_key},
                exc_info=True,
            )
            return {
                "success": False,
                "eventId": str(run.event_id),
                "effectType": run.effect_type,
                "error": str(e) or e.__class__.__name__,
            }

        return {"eventId": str(run.event_id), **outcome.to_dict()}

    def _close_run(self, run: EffectRun, reason: str) -> None:
        """Take a run that can no longer be retried out of the retry sweep."""
        logger.warning(
            f"Closing effect run {run.idempotency_key}: {reason}",
            extra={"idempotency_key": run.idempotency_key, "reason": reason},
        )
        self.repo.upsert_effect_run(
            run.copy(
                status=EffectRunStatus.SKIPPED,
                next_retry_at=None,
                completed_at=self.engine.clock(),
                error_message=reason,
            )
        )

    # --- Crash recovery ---

    def recover_stale_runs(self, stale_after: timedelta, limit: int = 20) -> list[dict[str, Any]]:
        """
        Fail runs stuck in running for longer than stale_after.

        Each is handed to the retry scheduler as a failed attempt, so it is
        either retried later or dead-lettered.
        """
        stale_before = self.engine.clock() - stale_after
        runs = self.repo.list_stale_running_runs(stale_before, limit)
        if runs:
            logger.warning(f"Recovering {len(runs)} stale effect runs", extra={"limit": limit})

        results = []
        for run in runs:
            if self._should_stop("recovery"):
                break
            try:
                outcome = self.engine.fail_run(run, self._rule_for(run), STALE_RUN_ERROR)
            except Exception as e:
                logger.error(
                    f"Recovery of {run.idempotency_key} failed: {e}",
                    extra={"idempotency_key": run.idempotency_key},
                    exc_info=True,
                )
                results.append({
                    "success": False,
                    "eventId": str(run.event_id),
                    "effectType": run.effect_type,
                    "error": str(e) or e.__class__.__name__,
                })
                continue
            results.append({"eventId": str(run.event_id), **outcome.to_dict()})
        return results

    def _rule_for(self, run: EffectRun) -> EffectRule:
        """The rule as it was when the run was claimed."""
        try:
            return EffectRule.from_row(run.effect_config)
        except RuleConfigurationError as e:
            logger.warning(
                f"Run {run.idempotency_key} has no usable rule snapshot, using default retry policy",
                extra={"idempotency_key": run.idempotency_key, "error": str(e)},
            )
            return EffectRule(event_name="", effect_type=run.effect_type)
