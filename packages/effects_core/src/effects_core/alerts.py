"""
Dead-letter alerting via Redis Streams.

Dead letters are stored by the repository first; this publisher then
appends a copy to a capped stream that alerting consumers (or operators
with the CLI) can tail.
"""

import json
import logging
from typing import Any

import redis

from basecore.redis import publish_to_stream, read_stream_range
from effects_core.contracts.runs import EffectDeadLetter

logger = logging.getLogger(__name__)


class RedisDeadLetterPublisher:
    """
    Publishes dead letters to a Redis stream.

    Args:
        client: Redis client (basecore.redis.get_redis_client())
        stream_name: Stream to append to
        max_len: Approximate cap on the stream length
    """

    def __init__(self, client: redis.Redis, stream_name: str = "effects:dlq", max_len: int = 10000):
        self.client = client
        self.stream_name = stream_name
        self.max_len = max_len

    def publish(self, dead_letter: EffectDeadLetter) -> str:
        """Append a dead letter; returns the stream message id."""
        message = {
            "dead_letter_id": str(dead_letter.id),
            "effect_run_id": str(dead_letter.effect_run_id),
            "event_id": str(dead_letter.event_id),
            "tenant_id": str(dead_letter.tenant_id) if dead_letter.tenant_id else "",
            "effect_type": dead_letter.effect_type,
            "attempts": dead_letter.attempts,
            "message": dead_letter.message,
            "error_details": json.dumps(dead_letter.error_details, default=str),
            "created_at": dead_letter.created_at.isoformat() if dead_letter.created_at else "",
        }

        msg_id = publish_to_stream(self.client, self.stream_name, message, max_len=self.max_len)

        logger.info(
            f"Published dead letter for {dead_letter.effect_type} to {self.stream_name}",
            extra={
                "stream": self.stream_name,
                "stream_msg_id": msg_id,
                "effect_run_id": str(dead_letter.effect_run_id),
            },
        )
        return msg_id

    def recent(self, count: int = 50) -> list[dict[str, Any]]:
        """Newest alerts first, each with its stream message id."""
        return [
            {"stream_msg_id": msg_id, **data}
            for msg_id, data in read_stream_range(self.client, self.stream_name, count=count)
        ]
