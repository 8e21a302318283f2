"""Enrich incident goals with similar past incidents from memory."""

import logging
from typing import Any, List, Tuple

from brain.models import IncidentContext, MemoryRecord

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "--- Relevant Historical Context ---"
CONTEXT_FOOTER = "--- End of Context ---"


class EnrichmentService:
    """Adds relevant historical context to the goal given to the reasoner.

    Enrichment is best effort: when embedding or search fails the original
    goal is returned so incident handling is never blocked.
    """

    def __init__(self,
                 embedder: Any,
                 vector_store: Any,
                 collection_name: str = "k8s_incidents",
                 relevance_threshold: float = 0.75,
                 limit: int = 3,
                 same_namespace: bool = False):
        """Initialize the enrichment service.

        Args:
            embedder: Provider with an async ``embed(text)`` method
            vector_store: Memory store (read only here)
            collection_name: Memory collection
            relevance_threshold: Minimum similarity for a memory to be used
            limit: Maximum number of memories to add
            same_namespace: Only use memories from the incident's namespace
        """
        self.embedder = embedder
        self.vector_store = vector_store
        self.collection_name = collection_name
        self.relevance_threshold = relevance_threshold
        self.limit = limit
        self.same_namespace = same_namespace

    @staticmethod
    def build_query(incident: IncidentContext) -> str:
        return f"{incident.failure_reason}: {incident.logs}"

    async def find_relevant_memories(self, incident: IncidentContext) -> List[Tuple[MemoryRecord, float]]:
        """Search memory for incidents similar to this one.

        Returns:
            Up to ``limit`` (record, similarity) pairs above the threshold, closest first
        """
        vector = await self.embedder.embed(self.build_query(incident))

        filters = None
        if self.same_namespace and incident.pod_namespace:
            filters = {"namespace": incident.pod_namespace}

        matches = await self.vector_store.search(
            self.collection_name,
            vector,
            k=self.limit,
            min_score=self.relevance_threshold,
            filters=filters
        )

        relevant = [m for m in matches if m[1] >= self.relevance_threshold]
        relevant.sort(key=lambda match: match[1], reverse=True)
        return relevant[:self.limit]

    @staticmethod
    def format_context(matches: List[Tuple[MemoryRecord, float]]) -> str:
        lines = ["", "", CONTEXT_HEADER]
        for record, _ in matches:
            lines.append(f"- Past Incident/Runbook: {record.describe()}")
        lines.append(CONTEXT_FOOTER)
        return "\n".join(lines) + "\n"

    async def enrich_goal(self, incident: IncidentContext, original_goal: str) -> str:
        """Append relevant past incidents to a goal.

        Args:
            incident: Incoming incident
            original_goal: Goal for the reasoning step

        Returns:
            The enriched goal, or ``original_goal`` unchanged when nothing relevant is found
        """
        logger.info(f"Starting cognitive enrichment for Incident {incident.incident_id}...")

        try:
            matches = await self.find_relevant_memories(incident)
        except Exception as e:
            logger.warning(f"Memory lookup failed for Incident {incident.incident_id}: {e}")
            return original_goal

        if not matches:
            logger.info(f"No relevant memories found for Incident {incident.incident_id}")
            return original_goal

        logger.info(f"Found {len(matches)} relevant memories for Incident {incident.incident_id}")
        return original_goal + self.format_context(matches)
