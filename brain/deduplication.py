"""Incident de-duplication using a shared Redis cache."""

import logging
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from brain.config import DEFAULT_DEDUP_WINDOW
from brain.errors import TransientStoreError

logger = logging.getLogger(__name__)

INCIDENT_KEY_PREFIX = "incident:"
PROCESSED_MARKER = "processed"


class RedisIncidentDeduplicator:
    """Suppresses repeated incident ids within a time window.

    The check is a single ``SET key value NX PX ttl`` call, so it stays
    correct for any number of concurrent callers across processes sharing
    the same Redis. The first writer wins and a repeat never extends the
    window.
    """

    def __init__(self,
                 redis_client: Any,
                 dedup_window: timedelta = DEFAULT_DEDUP_WINDOW,
                 fail_open: bool = True):
        """Initialize the deduplicator.

        Args:
            redis_client: ``redis.asyncio.Redis`` client
            dedup_window: How long an incident id stays suppressed
            fail_open: Treat incidents as new when Redis is unavailable
        """
        self.redis = redis_client
        self.dedup_window = dedup_window
        self.fail_open = fail_open

    @staticmethod
    def incident_key(incident_id: str) -> str:
        return f"{INCIDENT_KEY_PREFIX}{incident_id}"

    async def is_duplicate(self, incident_id: str) -> bool:
        """Record the incident and report whether it was already seen.

        Args:
            incident_id: Incident identifier

        Returns:
            False when this call created the marker, True when it already existed

        Raises:
            TransientStoreError: If Redis is unavailable and ``fail_open`` is off
        """
        key = self.incident_key(incident_id)
        ttl_ms = max(1, int(self.dedup_window.total_seconds() * 1000))

        try:
            was_set = await self.redis.set(key, PROCESSED_MARKER, px=ttl_ms, nx=True)
        except RedisError as e:
            if not self.fail_open:
                raise TransientStoreError(f"Dedup store unavailable: {e}") from e
            logger.warning(f"Dedup store unavailable ({e}). Treating incident {incident_id} as new.")
            return False

        if was_set:
            logger.info(f"Incident {incident_id} is new. Processing.")
            return False

        logger.info(f"Incident {incident_id} is a duplicate.")
        return True
