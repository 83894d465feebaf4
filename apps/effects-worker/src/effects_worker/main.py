"""
Effects Worker

Runs the dispatch engine's sweeps on a loop:
1. Drain pending outbox entries (process_batch)
2. Re-run effects whose retry time has passed (retry_failed_effects)
3. Recover runs left in running by a crashed worker (recover_stale_runs)

Several replicas may run side by side; outbox and run claims are
compare-and-swap writes. SIGTERM/SIGINT stop the loop after the item in
flight.
"""

import logging
import signal
import time
from datetime import timedelta

from basecore.db import get_db
from basecore.logging import setup_logging
from basecore.settings import get_settings
from effects_core.handlers.builtin import build_default_registry
from effects_core.runner import BatchRunner
from effects_core.service import build_engine, build_repository

logger = logging.getLogger(__name__)

POLL_INTERVAL_BUSY = 0.1
MAX_IDLE_SLEEP = 30.0

# Graceful shutdown
shutdown_requested = False
_active_runner: BatchRunner | None = None


def signal_handler(signum, frame):
    global shutdown_requested
    logger.info(f"Received signal {signum}, requesting shutdown...")
    shutdown_requested = True
    if _active_runner is not None:
        _active_runner.request_stop()


def run_cycle(
    runner: BatchRunner,
    batch_size: int,
    retry_limit: int,
    stale_after: timedelta,
) -> dict[str, int]:
    """
    One pass over all three sweeps.

    Returns:
        Number of items handled per sweep
    """
    counts = {"processed": 0, "retried": 0, "recovered": 0}

    counts["processed"] = len(runner.process_batch(batch_size))
    if not runner.stopping:
        counts["retried"] = len(runner.retry_failed_effects(retry_limit))
    if not runner.stopping:
        counts["recovered"] = len(runner.recover_stale_runs(stale_after, retry_limit))

    return counts


def _sleep(seconds: float) -> None:
    deadline = time.monotonic() + seconds
    while not shutdown_requested and time.monotonic() < deadline:
        time.sleep(min(0.5, max(0.0, deadline - time.monotonic())))


def main():
    """Main worker loop."""
    global _active_runner

    setup_logging()
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    settings = get_settings()
    registry = build_default_registry()
    stale_after = timedelta(seconds=settings.EFFECTS_STALE_RUN_SECONDS)
    interval = settings.EFFECTS_WORKER_INTERVAL_SECONDS

    logger.info(
        f"Starting effects worker (batch_size={settings.EFFECTS_BATCH_SIZE}, "
        f"retry_limit={settings.EFFECTS_RETRY_LIMIT}, interval={interval}s)"
    )

    consecutive_empty = 0

    while not shutdown_requested:
        db = next(get_db())
        try:
            repo = build_repository(db, settings)
            _active_runner = BatchRunner(build_engine(repo, settings, registry))
            counts = run_cycle(
                _active_runner,
                batch_size=settings.EFFECTS_BATCH_SIZE,
                retry_limit=settings.EFFECTS_RETRY_LIMIT,
                stale_after=stale_after,
            )

            if any(counts.values()):
                logger.info(
                    f"Cycle done: {counts['processed']} events, {counts['retried']} retries, "
                    f"{counts['recovered']} recovered",
                    extra=counts,
                )
                consecutive_empty = 0
                _sleep(POLL_INTERVAL_BUSY)
            else:
                consecutive_empty += 1
                # Back off while idle, capped
                _sleep(min(interval * (1.5 ** min(consecutive_empty, 5)), MAX_IDLE_SLEEP))

        except Exception as e:
            logger.error(f"Error in worker loop: {e}", exc_info=True)
            db.rollback()
            _sleep(interval)
        finally:
            _active_runner = None
            db.close()

    logger.info("Effects worker shutting down gracefully")


if __name__ == "__main__":
    main()
