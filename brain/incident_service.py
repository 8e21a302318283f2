"""Incident handling pipeline: dedup, enrichment, reasoning, and memory hand-off."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from brain.deduplication import RedisIncidentDeduplicator
from brain.enrichment import EnrichmentService
from brain.errors import ConfigurationError
from brain.memory_buffer import MemoryBuffer
from brain.models import IncidentContext, IncidentResolution

logger = logging.getLogger(__name__)

DEFAULT_GOAL = (
    "Diagnose the root cause of the failing Kubernetes pod and propose a safe remediation."
)


class IncidentService:
    """Runs each incoming incident through the memory pipeline.

    The reasoner is external: any object with an async
    ``resolve(incident, goal)`` method returning the resolution text, or
    None when the incident could not be resolved.
    """

    def __init__(self,
                 deduplicator: RedisIncidentDeduplicator,
                 enrichment: EnrichmentService,
                 buffer: MemoryBuffer,
                 reasoner: Any,
                 cluster_id: str = "unknown-cluster"):
        if not callable(getattr(reasoner, "resolve", None)):
            raise ConfigurationError("A reasoner with an async resolve(incident, goal) method is required")
        self.deduplicator = deduplicator
        self.enrichment = enrichment
        self.buffer = buffer
        self.reasoner = reasoner
        self.cluster_id = cluster_id

    async def handle_incident(self,
                              incident: IncidentContext,
                              goal: str = DEFAULT_GOAL) -> Dict[str, Any]:
        """Process one incident.

        Args:
            incident: Incoming incident
            goal: Goal handed to the reasoner before enrichment

        Returns:
            Dictionary with the outcome ``status`` and details
        """
        logger.info(
            f"Received Incident '{incident.incident_id}' for Pod '{incident.pod_name}' "
            f"in namespace '{incident.pod_namespace}'. Reason: {incident.failure_reason}"
        )
        start_time = datetime.now()

        if await self.deduplicator.is_duplicate(incident.incident_id):
            return {
                "incident_id": incident.incident_id,
                "status": "duplicate",
            }

        enriched_goal = await self.enrichment.enrich_goal(incident, goal)

        try:
            resolution_text = await self.reasoner.resolve(incident, enriched_goal)
        except Exception as e:
            logger.error(f"Reasoning failed for Incident {incident.incident_id}: {e}")
            return {
                "incident_id": incident.incident_id,
                "status": "failed",
                "error": str(e),
            }

        if not resolution_text:
            logger.info(f"No resolution produced for Incident {incident.incident_id}")
            return {
                "incident_id": incident.incident_id,
                "status": "unresolved",
                "enriched": enriched_goal != goal,
            }

        resolution = IncidentResolution(
            incident_id=incident.incident_id,
            cluster_id=self.cluster_id,
            namespace=incident.pod_namespace,
            raw_log=incident.logs,
            resolution_text=resolution_text,
        )
        await self.buffer.write(resolution)

        return {
            "incident_id": incident.incident_id,
            "status": "resolved",
            "enriched": enriched_goal != goal,
            "resolution": resolution_text,
            "duration_seconds": (datetime.now() - start_time).total_seconds(),
        }

    async def handle_incidents(self,
                               incidents: Iterable[IncidentContext],
                               goal: str = DEFAULT_GOAL,
                               max_concurrency: Optional[int] = 10) -> List[Dict[str, Any]]:
        """Process several incidents concurrently.

        Args:
            incidents: Incidents to process
            goal: Goal handed to the reasoner for each incident
            max_concurrency: Maximum incidents in flight (None for no limit)

        Returns:
            One result per incident, in input order
        """
        semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

        async def handle(incident: IncidentContext) -> Dict[str, Any]:
            if semaphore is None:
                return await self.handle_incident(incident, goal)
            async with semaphore:
                return await self.handle_incident(incident, goal)

        return list(await asyncio.gather(*(handle(incident) for incident in incidents)))
