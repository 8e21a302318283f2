"""Background consolidation of resolved incidents into long-term memory."""

import asyncio
import logging
from typing import Any, Dict, Optional

from brain.memory_buffer import MemoryBuffer
from brain.models import IncidentResolution, MemoryRecord

logger = logging.getLogger(__name__)

STORED = "stored"
DUPLICATE = "duplicate"
SKIPPED = "skipped"
FAILED = "failed"


class MemoryConsolidationService:
    """Drains the memory buffer and persists new memories.

    Each resolution is embedded, compared with its nearest stored neighbour
    and upserted only when no near-identical memory exists. Items are handled
    one at a time, so two similar resolutions arriving together can never
    both pass the duplicate check. Failed items are logged and dropped.
    """

    def __init__(self,
                 buffer: MemoryBuffer,
                 embedder: Any,
                 vector_store: Any,
                 collection_name: str = "k8s_incidents",
                 duplicate_threshold: float = 0.95):
        """Initialize the consolidation service.

        Args:
            buffer: Buffer to drain (this service is its only reader)
            embedder: Provider with an async ``embed(text)`` method
            vector_store: Memory store; the only writer is this service
            collection_name: Memory collection
            duplicate_threshold: Similarity at or above which a resolution counts as already stored
        """
        self.buffer = buffer
        self.embedder = embedder
        self.vector_store = vector_store
        self.collection_name = collection_name
        self.duplicate_threshold = duplicate_threshold

        self.stats: Dict[str, int] = {STORED: 0, DUPLICATE: 0, SKIPPED: 0, FAILED: 0}
        self._task: Optional[asyncio.Task] = None

    async def consolidate(self, resolution: IncidentResolution) -> str:
        """Consolidate a single resolution.

        Returns:
            Outcome: ``stored``, ``duplicate``, ``skipped`` or ``failed``
        """
        try:
            outcome = await self._consolidate(resolution)
        except Exception:
            logger.exception(f"Failed to consolidate memory for Incident {resolution.incident_id}")
            outcome = FAILED

        self.stats[outcome] += 1
        return outcome

    async def _consolidate(self, resolution: IncidentResolution) -> str:
        if not resolution.raw_log or not resolution.raw_log.strip():
            logger.warning(f"Skipping empty log for Incident {resolution.incident_id}")
            return SKIPPED

        vector = await self.embedder.embed(resolution.raw_log)

        nearest = await self.vector_store.search(self.collection_name, vector, k=1)
        if nearest:
            _, score = nearest[0]
            if score >= self.duplicate_threshold:
                logger.info(
                    f"Duplicate memory detected for Incident {resolution.incident_id} "
                    f"(Score: {score:.2f}). Skipping insertion."
                )
                return DUPLICATE

        record = MemoryRecord.from_resolution(resolution, vector)
        await self.vector_store.upsert(self.collection_name, record)

        logger.info(f"Successfully consolidated memory for Incident {resolution.incident_id}.")
        return STORED

    async def run(self) -> None:
        """Drain the buffer until cancelled."""
        logger.info("Memory Consolidation Service started. Listening for resolved incidents...")

        try:
            async for resolution in self.buffer.read_all():
                await self.consolidate(resolution)
        except asyncio.CancelledError:
            logger.info("Memory Consolidation Service stopping.")
            raise
        except Exception:
            logger.exception("Fatal error in Memory Consolidation Service loop.")

    def start(self) -> asyncio.Task:
        """Start the drain loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="memory-consolidation")
        return self._task

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        """Cancel the drain loop; items still buffered are not processed."""
        if self._task is None:
            return

        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            # Only the drain task's own cancellation is expected here.
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "running": self.running,
            "buffered": self.buffer.size(),
        }
