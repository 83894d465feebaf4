"""
Wiring of the dispatch engine from settings.

The API, the worker and the CLI build their engine here so they share the
same repository, registry and reliability settings.
"""

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from basecore.redis import get_redis_client
from basecore.settings import Settings, get_settings
from effects_core.alerts import RedisDeadLetterPublisher
from effects_core.commands import CommandProcessor
from effects_core.dispatch import DispatchEngine
from effects_core.handlers.builtin import build_default_registry
from effects_core.handlers.registry import HandlerRegistry
from effects_core.persistence.models import EffectsBase
from effects_core.persistence.repo import EffectRepository
from effects_core.persistence.sql import SqlEffectRepository
from effects_core.runner import BatchRunner

logger = logging.getLogger(__name__)


def build_repository(db: Session, settings: Settings | None = None) -> SqlEffectRepository:
    settings = settings or get_settings()
    return SqlEffectRepository(db, entity_tables=settings.EFFECTS_ENTITY_TABLES)


def build_dead_letter_publisher(settings: Settings | None = None) -> RedisDeadLetterPublisher | None:
    """Dead-letter stream publisher, or None when alerting is disabled."""
    settings = settings or get_settings()
    if not settings.EFFECTS_DLQ_ENABLED:
        return None
    return RedisDeadLetterPublisher(
        get_redis_client(),
        stream_name=settings.EFFECTS_DLQ_STREAM,
        max_len=settings.EFFECTS_DLQ_MAX_LEN,
    )


def build_engine(
    repo: EffectRepository,
    settings: Settings | None = None,
    registry: HandlerRegistry | None = None,
) -> DispatchEngine:
    settings = settings or get_settings()
    return DispatchEngine(
        repo,
        registry or build_default_registry(),
        handler_timeout=settings.EFFECTS_HANDLER_TIMEOUT_SECONDS,
        stale_after=timedelta(seconds=settings.EFFECTS_STALE_RUN_SECONDS),
        dead_letter_sink=build_dead_letter_publisher(settings),
    )


def build_processor(
    repo: EffectRepository,
    settings: Settings | None = None,
    registry: HandlerRegistry | None = None,
) -> CommandProcessor:
    """Command processor over a fully wired engine and runner."""
    settings = settings or get_settings()
    runner = BatchRunner(build_engine(repo, settings, registry))
    return CommandProcessor(
        runner,
        batch_size=settings.EFFECTS_BATCH_SIZE,
        retry_limit=settings.EFFECTS_RETRY_LIMIT,
        stale_after=timedelta(seconds=settings.EFFECTS_STALE_RUN_SECONDS),
    )


def create_tables(bind) -> None:
    """Create the effect engine tables that do not exist yet."""
    EffectsBase.metadata.create_all(bind=bind)
    logger.info("Effect engine tables ensured")
