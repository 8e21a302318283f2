"""Process wiring for the memory pipeline."""

import asyncio
import importlib
import logging
import os
import signal
from collections import Counter
from typing import Any, Optional

import redis.asyncio as redis

from brain.config import Settings, load_settings
from brain.consolidation import MemoryConsolidationService
from brain.deduplication import RedisIncidentDeduplicator
from brain.embeddings import SentenceTransformerEmbedder
from brain.enrichment import EnrichmentService
from brain.errors import ConfigurationError, TransientStoreError
from brain.incident_service import IncidentService
from brain.initializer import VectorDbInitializer
from brain.logging_setup import setup_logging
from brain.memory_buffer import MemoryBuffer
from brain.sources.kubernetes import KubernetesIncidentSource
from brain.vector_store import ChromaMemoryStore

logger = logging.getLogger(__name__)


class BrainRuntime:
    """Owns the long-lived clients and background work of the pipeline.

    A single memory store handle is shared: the consolidation service is its
    only writer and enrichment only reads from it.
    """

    def __init__(self,
                 settings: Settings,
                 redis_client: Any,
                 embedder: Any,
                 vector_store: Any,
                 reasoner: Any):
        self.settings = settings
        self.redis = redis_client
        self.embedder = embedder
        self.vector_store = vector_store

        self.buffer = MemoryBuffer(capacity=settings.buffer_capacity)
        self.deduplicator = RedisIncidentDeduplicator(
            redis_client,
            dedup_window=settings.dedup_window,
            fail_open=settings.dedup_fail_open
        )
        self.initializer = VectorDbInitializer(vector_store, settings.collection_name)
        self.consolidator = MemoryConsolidationService(
            buffer=self.buffer,
            embedder=embedder,
            vector_store=vector_store,
            collection_name=settings.collection_name,
            duplicate_threshold=settings.duplicate_threshold
        )
        self.enrichment = EnrichmentService(
            embedder=embedder,
            vector_store=vector_store,
            collection_name=settings.collection_name,
            relevance_threshold=settings.relevance_threshold,
            limit=settings.retrieval_limit,
            same_namespace=settings.retrieval_same_namespace
        )
        self.incident_service = IncidentService(
            deduplicator=self.deduplicator,
            enrichment=self.enrichment,
            buffer=self.buffer,
            reasoner=reasoner,
            cluster_id=settings.cluster_id
        )

    @classmethod
    def from_settings(cls, settings: Settings, reasoner: Any = None) -> "BrainRuntime":
        """Create the Redis client, memory store and embedding model from settings.

        Args:
            settings: Loaded settings
            reasoner: Reasoner instance (None to load ``settings.reasoner``)

        Raises:
            ConfigurationError: If no usable reasoner is given or configured
        """
        if reasoner is None:
            if not settings.reasoner:
                raise ConfigurationError("No reasoner configured (set BRAIN_REASONER to 'module:attribute')")
            reasoner = load_reasoner(settings.reasoner)

        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        embedder = SentenceTransformerEmbedder(
            model_name=settings.embedding_model,
            dimension=settings.embedding_dimension
        )
        vector_store = ChromaMemoryStore(
            persist_directory=settings.chroma_persist_directory,
            dimension=settings.embedding_dimension
        )
        return cls(settings, redis_client, embedder, vector_store, reasoner=reasoner)

    async def start(self) -> None:
        """Initialize the collection, then start consolidation."""
        collection_name = self.settings.collection_name
        if await self.initializer.initialize():
            stats = await asyncio.to_thread(self.vector_store.get_collection_stats, collection_name)
            logger.info(
                f"Memory collection '{collection_name}' holds {stats['total_memories']} memories "
                f"across {len(stats['namespaces'])} namespaces."
            )
        self.consolidator.start()

    async def poll_incidents(self, source: Any, stop_event: asyncio.Event) -> None:
        """Feed incidents from a source into the pipeline until ``stop_event`` is set.

        Args:
            source: Object with an async ``generate_incidents(namespace)`` generator
            stop_event: Set to end polling
        """
        interval = self.settings.poll_interval.total_seconds()
        namespace = self.settings.watch_namespace

        while not stop_event.is_set():
            try:
                incidents = [incident async for incident in source.generate_incidents(namespace)]
                if incidents:
                    results = await self.incident_service.handle_incidents(incidents)
                    statuses = Counter(result["status"] for result in results)
                    logger.info(f"Handled {len(results)} incidents: {dict(statuses)}")
            except (ConnectionError, TransientStoreError) as e:
                logger.error(f"Incident poll failed: {e}. Retrying in {interval:g}s.")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        await self.consolidator.stop()
        await self.redis.aclose()
        logger.info("Brain runtime stopped.")


def load_reasoner(path: str) -> Any:
    """Import a reasoner given as ``package.module:attribute``.

    The attribute is either a reasoner instance or a class / zero-argument
    factory returning one.

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"Reasoner must be given as 'module:attribute', got {path!r}")

    try:
        target = getattr(importlib.import_module(module_name), attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Could not load reasoner {path!r}: {e}") from e

    if isinstance(target, type) or (callable(target) and not hasattr(target, "resolve")):
        target = target()
    return target


async def main(config_path: Optional[str] = None) -> None:
    """Poll the cluster for failing pods until SIGINT or SIGTERM."""
    settings = load_settings(config_path)
    setup_logging(settings.log_level, settings.log_format)

    runtime = BrainRuntime.from_settings(settings)
    source = KubernetesIncidentSource(
        redis_client=runtime.redis,
        debounce_window=settings.debounce_window
    )
    await runtime.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    logger.info(f"Brain runtime started (collection '{settings.collection_name}').")
    try:
        await runtime.poll_incidents(source, stop_event)
    finally:
        await runtime.shutdown()


def run() -> None:
    try:
        asyncio.run(main(os.getenv("BRAIN_CONFIG_PATH")))
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)


if __name__ == "__main__":
    run()
