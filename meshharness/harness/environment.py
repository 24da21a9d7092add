"""Explicit setup/teardown of a mesh-enabled test environment.

Replaces class-level before/after hooks: tests receive a ``MeshEnvironment``
and teardown runs when the ``mesh_environment`` context exits, whether setup,
the test body, or nothing at all failed.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from kubernetes import client

from meshharness.harness.cluster import ClusterHandle
from meshharness.harness.errors import HarnessError, ProvisioningFailure
from meshharness.harness.manifests import ManifestLifecycle, load_manifests
from meshharness.harness.mesh import MeshInstaller
from meshharness.harness.models import Manifest, Phase
from meshharness.settings import settings

logger = logging.getLogger(__name__)

WORKLOAD_MANIFESTS = ("istio-deployment.yaml", "istio-service.yaml", "istio-ingress.yaml")


@dataclass
class MeshEnvironment:
    """Everything a test needs from a provisioned cluster."""

    cluster: ClusterHandle
    apis: Dict[str, Any]
    lifecycle: ManifestLifecycle
    mesh: MeshInstaller
    namespace: str
    workload: List[Manifest] = field(default_factory=list)

    def url(self, path: Optional[str] = None) -> str:
        """Ingress URL for ``path`` (the configured ingress path by default)."""
        return self.cluster.ingress_url(path if path is not None else settings.ingress_path)

    def teardown(self, raise_errors: bool = True) -> None:
        """Remove the workload, the istioctl helper and the control plane.

        Every step is attempted, including after transport errors from the
        Kubernetes client. The first failure is re-raised afterwards as a
        ``HarnessError`` unless ``raise_errors`` is False, in which case
        failures are only logged.
        """
        steps = [
            ("workload", lambda: self.lifecycle.run(Phase.DELETE, self.namespace, self.workload)),
            ("istioctl", lambda: self.mesh.istioctl(Phase.DELETE, self.namespace)),
            ("control plane", self.mesh.uninstall),
        ]
        first_error: Optional[Exception] = None
        for name, step in steps:
            try:
                step()
            except Exception as e:
                logger.error(f"Teardown of {name} failed: {e}", exc_info=True)
                first_error = first_error or e

        if first_error is None or not raise_errors:
            return
        if isinstance(first_error, HarnessError):
            raise first_error
        raise ProvisioningFailure(f"Teardown failed: {first_error!r}") from first_error


def kubernetes_apis(api_client: client.ApiClient) -> Dict[str, Any]:
    return {
        "core": client.CoreV1Api(api_client),
        "apps": client.AppsV1Api(api_client),
        "networking": client.NetworkingV1Api(api_client),
    }


@contextmanager
def mesh_environment(
    cluster: ClusterHandle,
    namespace: Optional[str] = None,
    app_image: Optional[str] = None,
    workload_files: Sequence[str] = WORKLOAD_MANIFESTS,
    profile: Optional[str] = None,
    apis: Optional[Dict[str, Any]] = None,
    manifests_dir: Optional[Path] = None,
) -> Iterator[MeshEnvironment]:
    """Set up Istio and the sample workload on a started cluster.

    Steps run strictly in order: image validation and loading, namespace with
    sidecar injection, istioctl helper, control-plane install, workload
    manifests (deployment, service, ingress) with readiness wait. The workload
    containers run ``app_image``, the image loaded into the node.
    """
    namespace = namespace or settings.namespace
    app_image = app_image or settings.app_image

    workload = [
        m.with_image(app_image)
        for m in load_manifests(*workload_files, directory=manifests_dir)
    ]

    cluster.validate_image(app_image)
    cluster.load_image(app_image)

    api_client = None
    if apis is None:
        api_client = cluster.api_client()
        apis = kubernetes_apis(api_client)

    lifecycle = ManifestLifecycle(apis)
    mesh = MeshInstaller(cluster, apis, lifecycle)
    environment = MeshEnvironment(
        cluster=cluster,
        apis=apis,
        lifecycle=lifecycle,
        mesh=mesh,
        namespace=namespace,
        workload=workload,
    )

    try:
        mesh.load_images()
        mesh.setup(namespace, profile)
        environment.workload = lifecycle.apply(namespace, environment.workload, wait_for_ready=True)
        yield environment
    except BaseException:
        environment.teardown(raise_errors=False)
        raise
    else:
        environment.teardown()
    finally:
        if api_client is not None:
            api_client.close()
