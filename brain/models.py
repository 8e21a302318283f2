"""Data types flowing through the incident memory pipeline."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class IncidentContext:
    """An incident reported for a failing pod.

    Only ``incident_id``, ``pod_namespace``, ``failure_reason`` and ``logs``
    are read by the memory pipeline; the rest is carried for the reasoner.
    """
    incident_id: str
    pod_namespace: str = ""
    failure_reason: str = ""
    logs: str = ""
    pod_name: str = ""
    pod_manifest_json: str = ""
    deployment_manifest_json: str = ""
    timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IncidentContext":
        """Build an incident from an inbound payload (snake_case keys)."""
        return cls(
            incident_id=str(data["incident_id"]),
            pod_namespace=data.get("pod_namespace", "") or "",
            failure_reason=data.get("failure_reason", "") or "",
            logs=data.get("logs", "") or "",
            pod_name=data.get("pod_name", "") or "",
            pod_manifest_json=data.get("pod_manifest_json", "") or "",
            deployment_manifest_json=data.get("deployment_manifest_json", "") or "",
            timestamp=data.get("timestamp"),
        )


@dataclass
class IncidentResolution:
    """A resolution produced by the reasoning loop, queued for consolidation."""
    incident_id: str
    cluster_id: str
    namespace: str
    raw_log: str
    resolution_text: str


@dataclass(frozen=True)
class MemoryRecord:
    """A consolidated incident memory stored in the vector database."""
    id: str
    cluster_id: str
    namespace: str
    raw_log: str
    resolution_action: str
    embedding: List[float] = field(default_factory=list, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_resolution(cls, resolution: IncidentResolution, embedding: List[float]) -> "MemoryRecord":
        return cls(
            id=resolution.incident_id,
            cluster_id=resolution.cluster_id,
            namespace=resolution.namespace,
            raw_log=resolution.raw_log,
            resolution_action=resolution.resolution_text,
            embedding=list(embedding),
            created_at=datetime.now(timezone.utc),
        )

    def describe(self) -> str:
        """Human readable summary used when injecting memories into a goal."""
        namespace = self.namespace or "unknown"
        return f"[{namespace}] {self.raw_log.strip()} => Resolution: {self.resolution_action.strip()}"

    def to_metadata(self) -> Dict[str, str]:
        """Metadata for the vector store.

        ChromaDB only accepts scalar metadata values, so everything is
        stored as a string; the raw log is kept as the document text.
        """
        metadata = {
            "record_id": self.id,
            "cluster_id": self.cluster_id,
            "namespace": self.namespace,
            "resolution_action": self.resolution_action,
            "created_at": self.created_at.isoformat(),
        }
        return {k: str(v) for k, v in metadata.items()}

    @classmethod
    def from_metadata(cls,
                      record_id: str,
                      document: Optional[str],
                      metadata: Optional[Dict[str, Any]],
                      embedding: Optional[List[float]] = None) -> "MemoryRecord":
        metadata = metadata or {}
        created_at = metadata.get("created_at")
        try:
            created = datetime.fromisoformat(created_at) if created_at else datetime.now(timezone.utc)
        except ValueError:
            created = datetime.now(timezone.utc)

        return cls(
            id=record_id,
            cluster_id=metadata.get("cluster_id", ""),
            namespace=metadata.get("namespace", ""),
            raw_log=document or "",
            resolution_action=metadata.get("resolution_action", ""),
            embedding=list(embedding) if embedding is not None else [],
            created_at=created,
        )
