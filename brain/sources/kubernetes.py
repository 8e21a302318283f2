"""Kubernetes source that turns failing pods into incidents."""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from redis.exceptions import RedisError

from brain.config import DEFAULT_DEBOUNCE_WINDOW
from brain.logging_setup import redact
from brain.models import IncidentContext

logger = logging.getLogger(__name__)

WAITING_FAILURE_REASONS = ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull")
TERMINATED_FAILURE_REASONS = ("OOMKilled", "Error")

DEFAULT_LOG_TAIL_LINES = 200
DEBOUNCE_KEY_PREFIX = "debounce:"


class KubernetesIncidentSource:
    """Detects failing containers and harvests their context.

    For every container stuck in a failure state it collects:
    - The last log lines of the container
    - The pod manifest with environment values redacted
    - The manifest of the owning Deployment, when there is one

    A container that already produced an incident is debounced for
    ``debounce_window``, so rescanning a pod that is still failing does not
    raise a new incident each time.
    """

    def __init__(self,
                 kubeconfig_path: Optional[str] = None,
                 context: Optional[str] = None,
                 log_tail_lines: int = DEFAULT_LOG_TAIL_LINES,
                 redis_client: Optional[Any] = None,
                 debounce_window: timedelta = DEFAULT_DEBOUNCE_WINDOW):
        """Initialize Kubernetes incident source.

        Args:
            kubeconfig_path: Path to kubeconfig file (None for in-cluster config)
            context: Kubernetes context to use (None for current context)
            log_tail_lines: Number of log lines to harvest per container
            redis_client: ``redis.asyncio.Redis`` client holding debounce markers
                (None disables debouncing)
            debounce_window: How long a failing container stays debounced
        """
        self.kubeconfig_path = kubeconfig_path
        self.context = context
        self.log_tail_lines = log_tail_lines
        self.redis = redis_client
        self.debounce_window = debounce_window
        self.api_client = None
        self.v1 = None
        self.apps_v1 = None

    async def initialize(self):
        """Initialize Kubernetes clients."""
        try:
            if self.kubeconfig_path:
                config.load_kube_config(config_file=self.kubeconfig_path, context=self.context)
            else:
                # Try in-cluster config first, fallback to default kubeconfig
                try:
                    config.load_incluster_config()
                except config.ConfigException:
                    config.load_kube_config(context=self.context)

            self.api_client = client.ApiClient()
            self.v1 = client.CoreV1Api()
            self.apps_v1 = client.AppsV1Api()

        except Exception as e:
            raise ConnectionError(f"Failed to initialize Kubernetes client: {e}")

    @staticmethod
    def find_failures(pod: Any) -> List[Tuple[str, str]]:
        """Return (container name, failure reason) for each failing container."""
        failures = []
        statuses = getattr(pod.status, "container_statuses", None) or []

        for status in statuses:
            state = status.state
            if state is None:
                continue
            if state.waiting is not None and state.waiting.reason in WAITING_FAILURE_REASONS:
                failures.append((status.name, state.waiting.reason))
            elif state.terminated is not None and state.terminated.reason in TERMINATED_FAILURE_REASONS:
                failures.append((status.name, state.terminated.reason))

        return failures

    @staticmethod
    def debounce_key(namespace: str, pod_name: str, container: str) -> str:
        return f"{DEBOUNCE_KEY_PREFIX}{namespace}/{pod_name}/{container}"

    async def is_debounced(self, namespace: str, pod_name: str, container: str) -> bool:
        """Mark a failing container as reported; True if it already was.

        Redis errors are logged and the container is treated as not debounced.
        """
        if self.redis is None:
            return False

        key = self.debounce_key(namespace, pod_name, container)
        ttl_ms = max(1, int(self.debounce_window.total_seconds() * 1000))
        try:
            was_set = await self.redis.set(key, "1", px=ttl_ms, nx=True)
        except RedisError as e:
            logger.warning(f"Debounce store unavailable ({e}). Reporting {namespace}/{pod_name}/{container}.")
            return False

        if not was_set:
            logger.info(f"Incident debounced for {namespace}/{pod_name}/{container}")
            return True
        return False

    @staticmethod
    def _pod_specs(manifest: Dict[str, Any]) -> List[Dict[str, Any]]:
        spec = manifest.get("spec") or {}
        template_spec = (spec.get("template") or {}).get("spec")
        return [s for s in (spec, template_spec) if s]

    def _redacted_manifest(self, obj: Any) -> str:
        """Serialize a pod or deployment with env values and secrets masked."""
        manifest = self.api_client.sanitize_for_serialization(obj)

        for pod_spec in self._pod_specs(manifest):
            for container in pod_spec.get("containers", []) or []:
                for env in container.get("env", []) or []:
                    if "value" in env:
                        env["value"] = "[REDACTED]"

        (manifest.get("metadata", {}).get("annotations") or {}).pop(
            "kubectl.kubernetes.io/last-applied-configuration", None
        )
        return redact(json.dumps(manifest, indent=2, default=str))

    def _read_logs(self, pod_name: str, namespace: str, container: str) -> str:
        try:
            return self.v1.read_namespaced_pod_log(
                name=pod_name,
                namespace=namespace,
                container=container,
                tail_lines=self.log_tail_lines,
            )
        except ApiException as e:
            logger.error(f"Error fetching logs for {namespace}/{pod_name}/{container}: {e}")
            return ""

    def _deployment_manifest(self, pod: Any) -> str:
        """Follow Pod -> ReplicaSet -> Deployment owners and return the redacted Deployment."""
        namespace = pod.metadata.namespace

        for owner in pod.metadata.owner_references or []:
            if owner.kind != "ReplicaSet":
                continue
            try:
                replica_set = self.apps_v1.read_namespaced_replica_set(name=owner.name, namespace=namespace)
            except ApiException as e:
                logger.error(f"Error fetching ReplicaSet {namespace}/{owner.name}: {e}")
                continue

            for rs_owner in replica_set.metadata.owner_references or []:
                if rs_owner.kind != "Deployment":
                    continue
                try:
                    deployment = self.apps_v1.read_namespaced_deployment(name=rs_owner.name, namespace=namespace)
                except ApiException as e:
                    logger.error(f"Error fetching Deployment {namespace}/{rs_owner.name}: {e}")
                    break
                return self._redacted_manifest(deployment)

        return ""

    async def build_incidents(self, pod: Any) -> List[IncidentContext]:
        """Create incidents for every failing, not yet debounced container of a pod."""
        incidents = []
        metadata = pod.metadata

        failures = []
        for container, reason in self.find_failures(pod):
            if not await self.is_debounced(metadata.namespace, metadata.name, container):
                failures.append((container, reason))
        if not failures:
            return incidents

        manifest = self._redacted_manifest(pod)
        deployment_manifest = await asyncio.to_thread(self._deployment_manifest, pod)

        for container, reason in failures:
            logger.info(f"Pod {metadata.namespace}/{metadata.name} container {container} is in {reason}")
            logs = await asyncio.to_thread(self._read_logs, metadata.name, metadata.namespace, container)

            incidents.append(IncidentContext(
                incident_id=f"{metadata.name}-{container}-{reason}-{int(time.time())}",
                pod_name=metadata.name,
                pod_namespace=metadata.namespace,
                failure_reason=reason,
                logs=logs or "",
                pod_manifest_json=manifest,
                deployment_manifest_json=deployment_manifest,
                timestamp=datetime.now(timezone.utc),
            ))

        return incidents

    async def generate_incidents(self, namespace: Optional[str] = None) -> AsyncGenerator[IncidentContext, None]:
        """Generate incidents for all failing pods.

        Args:
            namespace: Specific namespace to query (None for all namespaces)

        Yields:
            IncidentContext for each failing container
        """
        if self.v1 is None:
            await self.initialize()

        try:
            if namespace:
                pods = await asyncio.to_thread(self.v1.list_namespaced_pod, namespace=namespace)
            else:
                pods = await asyncio.to_thread(self.v1.list_pod_for_all_namespaces)
        except ApiException as e:
            logger.error(f"Error fetching pods: {e}")
            return

        for pod in pods.items:
            for incident in await self.build_incidents(pod):
                yield incident
