"""Startup initialization of the memory collection."""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class VectorDbInitializer:
    """Ensures the memory collection exists before anything uses it."""

    def __init__(self, vector_store: Any, collection_name: str = "k8s_incidents"):
        self.vector_store = vector_store
        self.collection_name = collection_name

    async def initialize(self) -> bool:
        """Create the collection if missing.

        Failures are logged and reported, never raised; later operations on a
        missing collection fail individually instead.
        """
        try:
            await self.vector_store.ensure_collection(self.collection_name)
        except Exception:
            logger.exception("Failed to initialize vector database collection.")
            return False

        logger.info(f"Vector database collection '{self.collection_name}' initialized.")
        return True
