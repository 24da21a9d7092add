"""Istio control-plane setup inside the ephemeral cluster.

istioctl is not installed on the k3s node. It is shipped as a throwaway
deployment running the istioctl image, and the binary is copied out of that
pod onto the node before ``istioctl install`` runs there.
"""

import logging
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from meshharness.common.paths import paths
from meshharness.harness.cluster import NODE_KUBECONFIG, ClusterHandle
from meshharness.harness.errors import ProvisioningFailure, ReadinessTimeout
from meshharness.harness.manifests import ManifestLifecycle, load_manifests
from meshharness.harness.models import Manifest, Phase
from meshharness.harness.polling import PollingTimeoutError, wait_for_condition
from meshharness.settings import settings

logger = logging.getLogger(__name__)

ISTIO_NAMESPACE = "istio-system"
ISTIOCTL_LABEL = "app=istio-ctl"
ISTIOCTL_MANIFEST = "istio-ctl.yaml"
ISTIOCTL_PATH = "/tmp/istioctl"
INJECTION_LABEL = {"istio-injection": "enabled"}


class MeshInstaller:
    """Namespace, istioctl and control-plane management for one cluster."""

    def __init__(
        self,
        cluster: ClusterHandle,
        apis: Dict[str, Any],
        lifecycle: Optional[ManifestLifecycle] = None,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ):
        self.cluster = cluster
        self.apis = apis
        self.lifecycle = lifecycle or ManifestLifecycle(apis, timeout=timeout, interval=interval)
        self.timeout = timeout or settings.readiness_timeout
        self.interval = interval or settings.poll_interval

    def load_images(self) -> None:
        """Load the istioctl, pilot and proxy images into the node."""
        for component in ("istioctl", "pilot", "proxyv2"):
            self.cluster.load_image(settings.istio_image(component), pull=True)

    def create_namespace(self, name: str, inject: bool = True) -> None:
        """Create ``name`` and, with ``inject``, enable sidecar injection in it."""
        core = self.apis["core"]
        labels = dict(INJECTION_LABEL) if inject else {}
        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name, "labels": labels}}
        try:
            core.create_namespace(body=body)
            logger.info(f"Created namespace {name}")
        except ApiException as e:
            if e.status != 409:
                raise ProvisioningFailure(f"Failed to create namespace {name}: {e.reason}") from e
            logger.warning(f"Namespace {name} already exists")
            if inject:
                try:
                    core.patch_namespace(name=name, body={"metadata": {"labels": labels}})
                except ApiException as patch_error:
                    raise ProvisioningFailure(
                        f"Failed to label namespace {name}: {patch_error.reason}"
                    ) from patch_error

    def delete_namespace(self, name: str, wait: bool = True) -> None:
        """Delete ``name``; a namespace that does not exist counts as deleted."""
        core = self.apis["core"]
        try:
            core.delete_namespace(name=name)
            logger.info(f"Deleting namespace {name}")
        except ApiException as e:
            if e.status == 404:
                logger.info(f"Namespace {name} already absent")
                return
            raise ProvisioningFailure(f"Failed to delete namespace {name}: {e.reason}") from e

        if not wait:
            return

        def _gone() -> bool:
            try:
                core.read_namespace(name=name)
            except ApiException as e:
                if e.status == 404:
                    return True
                raise
            return False

        try:
            wait_for_condition(_gone, self.timeout, self.interval, description=f"namespace {name} removal")
        except PollingTimeoutError as e:
            raise ReadinessTimeout([("Namespace", None, name)], self.timeout, e.last_error) from e

    def istioctl_manifests(self) -> list[Manifest]:
        image = settings.istio_image("istioctl")
        return [
            m.with_image(image)
            for m in load_manifests(ISTIOCTL_MANIFEST, directory=paths.manifests)
        ]

    def istioctl(self, phase: Phase, namespace: str) -> None:
        """Deploy (CREATE) or remove (DELETE) the istioctl helper pod."""
        self.lifecycle.run(phase, namespace, self.istioctl_manifests())

    def istioctl_pod_name(self, namespace: str) -> str:
        """Name of the istioctl helper pod, preferring a Running one."""
        try:
            pods = self.apis["core"].list_namespaced_pod(
                namespace=namespace, label_selector=ISTIOCTL_LABEL
            )
        except ApiException as e:
            raise ProvisioningFailure(f"Failed to list istioctl pods: {e.reason}") from e

        if not pods.items:
            raise ProvisioningFailure(f"No pod labelled {ISTIOCTL_LABEL} in {namespace}")

        running = [p for p in pods.items if p.status and p.status.phase == "Running"]
        return (running or pods.items)[0].metadata.name

    def install(self, namespace: str, profile: Optional[str] = None) -> None:
        """Install the control plane with istioctl from the helper pod in ``namespace``."""
        profile = profile or settings.istio_profile
        pod = self.istioctl_pod_name(namespace)

        self.cluster.run(f"kubectl cp {namespace}/{pod}:/usr/local/bin/istioctl {ISTIOCTL_PATH}")
        self.cluster.run(f"chmod +x {ISTIOCTL_PATH}")

        logger.info(f"Installing Istio with profile {profile}")
        self.cluster.run(
            f"{ISTIOCTL_PATH} --kubeconfig={NODE_KUBECONFIG} install --set profile={profile} -y"
        )

    def wait_for_control_plane(self) -> None:
        """Block until istiod reports all replicas ready."""
        apps = self.apis["apps"]

        def _istiod_ready() -> bool:
            deployment = apps.read_namespaced_deployment(name="istiod", namespace=ISTIO_NAMESPACE)
            desired = deployment.spec.replicas or 1
            return (deployment.status.ready_replicas or 0) >= desired

        try:
            wait_for_condition(_istiod_ready, self.timeout, self.interval, description="istiod")
        except PollingTimeoutError as e:
            raise ReadinessTimeout(
                [("Deployment", ISTIO_NAMESPACE, "istiod")], self.timeout, e.last_error
            ) from e

    def setup(self, namespace: str, profile: Optional[str] = None) -> None:
        """Full control-plane setup for a workload namespace."""
        self.create_namespace(namespace, inject=True)
        self.istioctl(Phase.CREATE, namespace)
        self.install(namespace, profile)
        self.wait_for_control_plane()

    def uninstall(self) -> None:
        """Remove the control plane by deleting its namespace."""
        self.delete_namespace(ISTIO_NAMESPACE)
