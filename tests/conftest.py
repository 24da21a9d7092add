"""Pytest configuration and shared fixtures for the mesh harness tests."""

import time
from typing import Any, Callable, Dict, Iterator, List, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from meshharness.common.paths import paths
from meshharness.harness.cluster import ClusterHandle
from meshharness.harness.environment import MeshEnvironment, mesh_environment
from meshharness.harness.models import HarnessConfig, RetrySpec
from meshharness.settings import settings

MANIFESTS_DIR = paths.manifests


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom command-line options."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests against a real k3s cluster (needs Docker)",
    )
    parser.addoption(
        "--k3s-image",
        action="store",
        default=settings.k3s_image,
        help="k3s image for the ephemeral cluster",
    )
    parser.addoption(
        "--namespace",
        action="store",
        default=settings.namespace,
        help="Namespace the sample workload is deployed into",
    )
    parser.addoption(
        "--istio-profile",
        action="store",
        default=settings.istio_profile,
        help="istioctl install profile",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Tests with Docker and Kubernetes doubles")
    config.addinivalue_line(
        "markers", "integration: Integration tests requiring Docker and a k3s cluster"
    )
    config.addinivalue_line("markers", "slow: Marks tests as slow (deselect with '-m \"not slow\"')")


def pytest_collection_modifyitems(config: pytest.Config, items: List[pytest.Item]) -> None:
    """Skip integration tests unless --run-integration is given."""
    if config.getoption("--run-integration"):
        return
    skip_integration = pytest.mark.skip(reason="needs --run-integration")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


@pytest.fixture(scope="session")
def harness_config(request: pytest.FixtureRequest) -> HarnessConfig:
    """Run configuration built from settings and command-line options."""
    return HarnessConfig(
        namespace=request.config.getoption("--namespace"),
        k3s_image=request.config.getoption("--k3s-image"),
        app_image=settings.app_image,
        istio_profile=request.config.getoption("--istio-profile"),
        startup_timeout=settings.startup_timeout,
        readiness_timeout=settings.readiness_timeout,
        poll_interval=settings.poll_interval,
        manifests_dir=settings.manifests_dir or MANIFESTS_DIR,
        retry=RetrySpec(max_attempts=settings.retry_attempts, delay_seconds=settings.retry_delay),
    )


# ---------------------------------------------------------------------------
# Doubles for unit tests
# ---------------------------------------------------------------------------


def api_exception(status: int, reason: str = "") -> ApiException:
    """An ApiException as raised by the Kubernetes client."""
    return ApiException(status=status, reason=reason or "Error")


@pytest.fixture
def make_api_exception() -> Callable[[int], ApiException]:
    return api_exception


def _create_mock_pod(name: str, namespace: str, phase: str = "Running") -> MagicMock:
    pod = MagicMock()
    pod.metadata.name = name
    pod.metadata.namespace = namespace
    pod.status.phase = phase
    return pod


@pytest.fixture
def make_pod() -> Callable[..., MagicMock]:
    return _create_mock_pod


@pytest.fixture
def k8s_apis() -> Dict[str, Any]:
    """Kubernetes API doubles keyed like the harness expects.

    Reads report every resource as ready by default: deployments with one
    ready replica, ingresses with a load balancer address.
    """
    core = MagicMock(name="CoreV1Api")
    apps = MagicMock(name="AppsV1Api")
    networking = MagicMock(name="NetworkingV1Api")

    deployment = MagicMock()
    deployment.spec.replicas = 1
    deployment.status.ready_replicas = 1
    apps.read_namespaced_deployment.return_value = deployment

    ingress = MagicMock()
    ingress.status.load_balancer.ingress = [MagicMock(ip="172.18.0.2")]
    networking.read_namespaced_ingress.return_value = ingress

    pods = MagicMock()
    pods.items = [_create_mock_pod("istio-ctl-7d9f8b6c5-x2x9q", "istio-test")]
    core.list_namespaced_pod.return_value = pods

    return {"core": core, "apps": apps, "networking": networking}


@pytest.fixture
def exec_output() -> Callable[..., tuple]:
    """Build a docker ``exec_run`` return value."""

    def _output(exit_code: int = 0, stdout: str = "", stderr: str = "") -> tuple:
        return (
            exit_code,
            (stdout.encode() if stdout else None, stderr.encode() if stderr else None),
        )

    return _output


@pytest.fixture
def docker_client() -> MagicMock:
    """Docker SDK client double whose container reports a Ready node."""
    container = MagicMock(name="Container")
    container.exec_run.return_value = (0, (b"True", None))
    container.attrs = {
        "NetworkSettings": {
            "Ports": {
                "6443/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32771"}],
                "80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32772"}],
            }
        }
    }
    container.put_archive.return_value = True

    client = MagicMock(name="DockerClient")
    client.containers.run.return_value = container
    client.images.get.return_value.save.return_value = iter([b"image-", b"bytes"])
    return client


@pytest.fixture
def started_cluster(docker_client: MagicMock) -> Iterator[ClusterHandle]:
    with ClusterHandle(
        image="rancher/k3s:test",
        docker_client=docker_client,
        startup_timeout=1.0,
        poll_interval=0.1,
        name="meshharness-k3s-test",
    ) as cluster:
        yield cluster


@pytest.fixture(autouse=True)
def patch_time_sleep(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> None:
    """Make time.sleep instant outside integration tests."""
    if "integration" not in request.keywords:
        monkeypatch.setattr(time, "sleep", lambda seconds: None)


# ---------------------------------------------------------------------------
# Real cluster for integration tests
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def cluster(harness_config: HarnessConfig) -> Iterator[ClusterHandle]:
    """A started k3s cluster, removed at the end of the session."""
    with ClusterHandle(
        image=harness_config.k3s_image,
        startup_timeout=harness_config.startup_timeout,
    ) as handle:
        yield handle


@pytest.fixture(scope="session")
def mesh_env(cluster: ClusterHandle, harness_config: HarnessConfig) -> Iterator[MeshEnvironment]:
    """Istio plus the sample workload, torn down when the session ends."""
    with mesh_environment(
        cluster,
        namespace=harness_config.namespace,
        app_image=harness_config.app_image,
        profile=harness_config.istio_profile,
        manifests_dir=harness_config.manifests_dir,
    ) as environment:
        yield environment


@pytest.fixture
def retry_spec(harness_config: HarnessConfig) -> Optional[RetrySpec]:
    return harness_config.retry
