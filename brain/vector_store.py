"""Vector store implementation using ChromaDB for incident memories."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import chromadb
from chromadb.config import Settings as ChromaSettings

from brain.errors import EmbeddingDimensionError
from brain.models import MemoryRecord

logger = logging.getLogger(__name__)


class ChromaMemoryStore:
    """ChromaDB-backed store for incident memory records.

    One instance is shared by the whole process. Reads (enrichment) may run
    concurrently; writes come only from the memory consolidation service, so
    the client is used without any extra locking.
    """

    def __init__(self,
                 persist_directory: str = "./chroma_db",
                 dimension: Optional[int] = None,
                 client: Optional[Any] = None):
        """Initialize ChromaDB memory store.

        Args:
            persist_directory: Directory to persist ChromaDB data
            dimension: Expected embedding dimension (None to skip the check)
            client: Existing ChromaDB client to use instead of creating one
        """
        self.persist_directory = persist_directory
        self.dimension = dimension

        if client is None:
            client = chromadb.PersistentClient(
                path=persist_directory,
                settings=ChromaSettings(
                    anonymized_telemetry=False,
                    allow_reset=True
                )
            )
        self.client = client
        self._collections: Dict[str, Any] = {}

    def _check_dimension(self, vector: List[float]) -> None:
        if self.dimension is not None and len(vector) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(vector))

    def _get_collection(self, name: str):
        collection = self._collections.get(name)
        if collection is None:
            # Raises if the collection was never created.
            collection = self.client.get_collection(name=name)
            self._collections[name] = collection
        return collection

    async def ensure_collection(self, name: str) -> None:
        """Create the collection if it does not exist yet.

        Args:
            name: Collection name
        """
        collection = await asyncio.to_thread(
            self.client.get_or_create_collection,
            name=name,
            metadata={
                "description": "KubeMind incident memories",
                "hnsw:space": "cosine",
            }
        )
        self._collections[name] = collection

    async def upsert(self, collection_name: str, record: MemoryRecord) -> str:
        """Insert or replace a memory record keyed by its id.

        Args:
            collection_name: Target collection
            record: Memory record with its embedding

        Returns:
            Record ID
        """
        self._check_dimension(record.embedding)
        collection = self._get_collection(collection_name)

        await asyncio.to_thread(
            collection.upsert,
            ids=[record.id],
            embeddings=[record.embedding],
            documents=[record.raw_log],
            metadatas=[record.to_metadata()]
        )
        logger.debug(f"Upserted memory {record.id} into {collection_name}")
        return record.id

    async def search(self,
                     collection_name: str,
                     vector: List[float],
                     k: int = 1,
                     min_score: Optional[float] = None,
                     filters: Optional[Dict[str, Any]] = None) -> List[Tuple[MemoryRecord, float]]:
        """Find the records nearest to a vector.

        Args:
            collection_name: Collection to search
            vector: Query embedding
            k: Maximum number of results
            min_score: Drop results with a lower similarity
            filters: Optional metadata filters

        Returns:
            (record, similarity) pairs, highest similarity first
        """
        self._check_dimension(vector)
        collection = self._get_collection(collection_name)

        if await asyncio.to_thread(collection.count) == 0:
            return []

        results = await asyncio.to_thread(
            collection.query,
            query_embeddings=[vector],
            n_results=k,
            where=filters or None,
            include=["documents", "metadatas", "distances"]
        )

        ids = results["ids"][0] if results.get("ids") else []
        documents = results["documents"][0] if results.get("documents") else [None] * len(ids)
        metadatas = results["metadatas"][0] if results.get("metadatas") else [None] * len(ids)
        distances = results["distances"][0] if results.get("distances") else []

        matches = []
        for i, record_id in enumerate(ids):
            # Cosine space: distance = 1 - similarity
            similarity = 1 - distances[i]
            if min_score is not None and similarity < min_score:
                continue
            record = MemoryRecord.from_metadata(record_id, documents[i], metadatas[i])
            matches.append((record, similarity))

        matches.sort(key=lambda match: match[1], reverse=True)
        return matches[:k]

    def get_collection_stats(self, collection_name: str) -> Dict[str, Any]:
        """Get statistics about a memory collection.

        Returns:
            Dictionary with record counts per namespace and cluster
        """
        collection = self._get_collection(collection_name)
        count = collection.count()

        metadatas = []
        if count:
            sample_results = collection.get(limit=min(100, count), include=["metadatas"])
            metadatas = sample_results.get("metadatas") or []

        namespaces: Dict[str, int] = {}
        clusters: Dict[str, int] = {}
        for metadata in metadatas:
            namespace = metadata.get("namespace") or "unknown"
            namespaces[namespace] = namespaces.get(namespace, 0) + 1
            cluster = metadata.get("cluster_id") or "unknown"
            clusters[cluster] = clusters.get(cluster, 0) + 1

        return {
            "total_memories": count,
            "namespaces": namespaces,
            "clusters": clusters,
            "collection_name": collection_name,
        }

