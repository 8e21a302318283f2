"""Tests for the Kubernetes incident source."""

import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

from kubernetes.client.rest import ApiException
from redis.exceptions import ConnectionError as RedisConnectionError

from brain.sources.kubernetes import KubernetesIncidentSource


def make_status(name, waiting=None, terminated=None):
    status = Mock()
    status.name = name
    status.state = Mock()
    status.state.waiting = Mock(reason=waiting) if waiting else None
    status.state.terminated = Mock(reason=terminated) if terminated else None
    return status


@pytest.fixture
def k8s_source():
    """Create a KubernetesIncidentSource with mocked clients."""
    source = KubernetesIncidentSource(log_tail_lines=50)
    source.api_client = Mock()
    source.v1 = Mock()
    source.apps_v1 = Mock()
    return source


@pytest.fixture
def mock_pod():
    """Create a mock pod with one crashing and one healthy container."""
    pod = Mock()
    pod.metadata = Mock()
    pod.metadata.name = "checkout-7d9f"
    pod.metadata.namespace = "payments"
    pod.metadata.owner_references = []
    pod.status = Mock()
    pod.status.container_statuses = [
        make_status("app", terminated="OOMKilled"),
        make_status("sidecar"),
    ]
    return pod


@pytest.fixture
def pod_manifest():
    return {
        "metadata": {
            "name": "checkout-7d9f",
            "annotations": {"kubectl.kubernetes.io/last-applied-configuration": "{...}"},
        },
        "spec": {
            "containers": [{
                "name": "app",
                "env": [
                    {"name": "DB_PASSWORD", "value": "hunter2"},
                    {"name": "API_TOKEN", "valueFrom": {"secretKeyRef": {"name": "api"}}},
                ],
                "args": ["--api_key=abc123"],
            }]
        },
    }


class TestKubernetesIncidentSource:
    """Test cases for KubernetesIncidentSource."""

    def test_initialization(self):
        source = KubernetesIncidentSource()

        assert source.kubeconfig_path is None
        assert source.context is None
        assert source.log_tail_lines == 200
        assert source.v1 is None

    @pytest.mark.asyncio
    async def test_initialize_with_kubeconfig(self):
        source = KubernetesIncidentSource(kubeconfig_path="/tmp/kubeconfig", context="staging")

        with patch("brain.sources.kubernetes.config.load_kube_config") as mock_load, \
             patch("brain.sources.kubernetes.client") as mock_client:
            await source.initialize()

        mock_load.assert_called_once_with(config_file="/tmp/kubeconfig", context="staging")
        assert source.v1 is mock_client.CoreV1Api.return_value
        assert source.api_client is mock_client.ApiClient.return_value
        assert source.apps_v1 is mock_client.AppsV1Api.return_value

    @pytest.mark.asyncio
    async def test_initialize_failure(self):
        source = KubernetesIncidentSource(kubeconfig_path="/tmp/kubeconfig")

        with patch("brain.sources.kubernetes.config.load_kube_config",
                   side_effect=Exception("no such file")):
            with pytest.raises(ConnectionError, match="Failed to initialize Kubernetes client"):
                await source.initialize()

    def test_find_failures(self):
        pod = Mock()
        pod.status.container_statuses = [
            make_status("app", waiting="CrashLoopBackOff"),
            make_status("init", waiting="ContainerCreating"),
            make_status("worker", terminated="OOMKilled"),
            make_status("job", terminated="Completed"),
            make_status("proxy", waiting="ImagePullBackOff"),
        ]

        assert KubernetesIncidentSource.find_failures(pod) == [
            ("app", "CrashLoopBackOff"),
            ("worker", "OOMKilled"),
            ("proxy", "ImagePullBackOff"),
        ]

    def test_find_failures_without_statuses(self):
        pod = Mock()
        pod.status.container_statuses = None

        assert KubernetesIncidentSource.find_failures(pod) == []

    @pytest.mark.asyncio
    async def test_build_incidents(self, k8s_source, mock_pod, pod_manifest):
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.return_value = "java.lang.OutOfMemoryError"

        with patch("brain.sources.kubernetes.time.time", return_value=1700000000):
            incidents = await k8s_source.build_incidents(mock_pod)

        assert len(incidents) == 1
        incident = incidents[0]
        assert incident.incident_id == "checkout-7d9f-app-OOMKilled-1700000000"
        assert incident.pod_namespace == "payments"
        assert incident.failure_reason == "OOMKilled"
        assert incident.logs == "java.lang.OutOfMemoryError"
        k8s_source.v1.read_namespaced_pod_log.assert_called_once_with(
            name="checkout-7d9f", namespace="payments", container="app", tail_lines=50
        )

    @pytest.mark.asyncio
    async def test_manifest_is_redacted(self, k8s_source, mock_pod, pod_manifest):
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.return_value = ""

        [incident] = await k8s_source.build_incidents(mock_pod)

        assert "hunter2" not in incident.pod_manifest_json
        assert "abc123" not in incident.pod_manifest_json
        manifest = json.loads(incident.pod_manifest_json)
        env = manifest["spec"]["containers"][0]["env"]
        assert env[0]["value"] == "[REDACTED]"
        assert env[1]["valueFrom"] == {"secretKeyRef": {"name": "api"}}
        assert manifest["metadata"]["annotations"] == {}

    @pytest.mark.asyncio
    async def test_log_error_yields_empty_logs(self, k8s_source, mock_pod, pod_manifest):
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.side_effect = ApiException(status=400, reason="Bad Request")

        [incident] = await k8s_source.build_incidents(mock_pod)

        assert incident.logs == ""

    @pytest.mark.asyncio
    async def test_healthy_pod_has_no_incidents(self, k8s_source):
        pod = Mock()
        pod.status.container_statuses = [make_status("app")]

        assert await k8s_source.build_incidents(pod) == []
        k8s_source.v1.read_namespaced_pod_log.assert_not_called()

    @pytest.mark.asyncio
    async def test_generate_incidents(self, k8s_source, mock_pod, pod_manifest):
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.return_value = "heap"
        k8s_source.v1.list_namespaced_pod.return_value = Mock(items=[mock_pod])

        with patch.object(k8s_source, "initialize"):
            incidents = [incident async for incident in k8s_source.generate_incidents("payments")]

        k8s_source.v1.list_namespaced_pod.assert_called_once_with(namespace="payments")
        assert [i.failure_reason for i in incidents] == ["OOMKilled"]

    @pytest.mark.asyncio
    async def test_generate_incidents_api_error(self, k8s_source):
        k8s_source.v1.list_pod_for_all_namespaces.side_effect = ApiException(status=403)

        with patch.object(k8s_source, "initialize"):
            incidents = [incident async for incident in k8s_source.generate_incidents()]

        assert incidents == []

    @pytest.mark.asyncio
    async def test_generate_incidents_reuses_clients(self, k8s_source):
        k8s_source.v1.list_pod_for_all_namespaces.return_value = Mock(items=[])

        with patch.object(k8s_source, "initialize") as mock_initialize:
            [incident async for incident in k8s_source.generate_incidents()]

        mock_initialize.assert_not_called()


def owner(kind, name):
    ref = Mock()
    ref.kind = kind
    ref.name = name
    return ref


class TestDeploymentManifest:
    """The owning Deployment is attached to each incident."""

    @pytest.fixture
    def deployment_manifest(self):
        return {
            "kind": "Deployment",
            "metadata": {"name": "checkout", "annotations": None},
            "spec": {"template": {"spec": {"containers": [{
                "name": "app",
                "env": [{"name": "DB_PASSWORD", "value": "hunter2"}],
            }]}}},
        }

    @pytest.mark.asyncio
    async def test_follows_replica_set_to_deployment(self, k8s_source, mock_pod, pod_manifest,
                                                     deployment_manifest):
        mock_pod.metadata.owner_references = [owner("ReplicaSet", "checkout-7d9f5")]
        replica_set = Mock()
        replica_set.metadata.owner_references = [owner("Deployment", "checkout")]
        k8s_source.apps_v1.read_namespaced_replica_set.return_value = replica_set
        deployment = k8s_source.apps_v1.read_namespaced_deployment.return_value
        k8s_source.api_client.sanitize_for_serialization.side_effect = (
            lambda obj: deployment_manifest if obj is deployment else pod_manifest
        )
        k8s_source.v1.read_namespaced_pod_log.return_value = ""

        [incident] = await k8s_source.build_incidents(mock_pod)

        k8s_source.apps_v1.read_namespaced_replica_set.assert_called_once_with(
            name="checkout-7d9f5", namespace="payments"
        )
        k8s_source.apps_v1.read_namespaced_deployment.assert_called_once_with(
            name="checkout", namespace="payments"
        )
        manifest = json.loads(incident.deployment_manifest_json)
        assert manifest["kind"] == "Deployment"
        env = manifest["spec"]["template"]["spec"]["containers"][0]["env"]
        assert env == [{"name": "DB_PASSWORD", "value": "[REDACTED]"}]
        assert "hunter2" not in incident.deployment_manifest_json

    @pytest.mark.asyncio
    async def test_missing_replica_set_leaves_manifest_empty(self, k8s_source, mock_pod, pod_manifest):
        mock_pod.metadata.owner_references = [owner("ReplicaSet", "gone")]
        k8s_source.apps_v1.read_namespaced_replica_set.side_effect = ApiException(status=404)
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.return_value = ""

        [incident] = await k8s_source.build_incidents(mock_pod)

        assert incident.deployment_manifest_json == ""
        assert incident.pod_manifest_json != ""

    @pytest.mark.asyncio
    async def test_pod_without_deployment_owner(self, k8s_source, mock_pod, pod_manifest):
        mock_pod.metadata.owner_references = [owner("StatefulSet", "db")]
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.return_value = ""

        [incident] = await k8s_source.build_incidents(mock_pod)

        assert incident.deployment_manifest_json == ""
        k8s_source.apps_v1.read_namespaced_replica_set.assert_not_called()


class TestDebounce:
    """A container that keeps failing is reported once per debounce window."""

    @pytest.fixture
    def debounced_source(self, k8s_source, fake_redis, pod_manifest):
        k8s_source.redis = fake_redis
        k8s_source.debounce_window = timedelta(minutes=5)
        k8s_source.api_client.sanitize_for_serialization.return_value = pod_manifest
        k8s_source.v1.read_namespaced_pod_log.return_value = "back-off restarting failed container"
        return k8s_source

    @pytest.fixture
    def crashing_pod(self):
        pod = Mock()
        pod.metadata.name = "web-1"
        pod.metadata.namespace = "default"
        pod.metadata.owner_references = []
        pod.status.container_statuses = [make_status("app", waiting="CrashLoopBackOff")]
        return pod

    @pytest.mark.asyncio
    async def test_rescan_is_suppressed(self, debounced_source, crashing_pod, clock):
        with patch("brain.sources.kubernetes.time.time", return_value=1000):
            first = await debounced_source.build_incidents(crashing_pod)
        clock.advance(30)
        with patch("brain.sources.kubernetes.time.time", return_value=1030):
            second = await debounced_source.build_incidents(crashing_pod)

        assert [i.incident_id for i in first] == ["web-1-app-CrashLoopBackOff-1000"]
        assert second == []
        assert debounced_source.v1.read_namespaced_pod_log.call_count == 1

    @pytest.mark.asyncio
    async def test_reported_again_after_window(self, debounced_source, crashing_pod, clock):
        await debounced_source.build_incidents(crashing_pod)
        clock.advance(301)

        assert len(await debounced_source.build_incidents(crashing_pod)) == 1

    @pytest.mark.asyncio
    async def test_containers_are_debounced_separately(self, debounced_source, crashing_pod):
        await debounced_source.build_incidents(crashing_pod)
        crashing_pod.status.container_statuses.append(make_status("worker", terminated="OOMKilled"))

        incidents = await debounced_source.build_incidents(crashing_pod)

        assert [(i.failure_reason, i.logs) for i in incidents] == [
            ("OOMKilled", "back-off restarting failed container")
        ]

    @pytest.mark.asyncio
    async def test_debounce_key_uses_set_nx(self, k8s_source):
        k8s_source.redis = Mock()
        k8s_source.redis.set = AsyncMock(return_value=True)

        assert await k8s_source.is_debounced("default", "web-1", "app") is False
        k8s_source.redis.set.assert_awaited_once_with(
            "debounce:default/web-1/app", "1", px=300000, nx=True
        )

    @pytest.mark.asyncio
    async def test_store_outage_reports_incident(self, k8s_source, caplog):
        k8s_source.redis = Mock()
        k8s_source.redis.set = AsyncMock(side_effect=RedisConnectionError("connection refused"))

        assert await k8s_source.is_debounced("default", "web-1", "app") is False
        assert "Debounce store unavailable" in caplog.text

    @pytest.mark.asyncio
    async def test_without_redis_nothing_is_debounced(self, k8s_source):
        assert await k8s_source.is_debounced("default", "web-1", "app") is False
