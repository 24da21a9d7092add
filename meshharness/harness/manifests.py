"""Declarative manifest loading and create/delete lifecycle.

Manifests are submitted in the order given; there is no dependency
resolution, so callers order workload, then service, then ingress.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Union

import yaml
from kubernetes.client.rest import ApiException

from meshharness.common.paths import paths
from meshharness.harness.errors import ProvisioningFailure, ReadinessTimeout
from meshharness.harness.models import Manifest, Phase
from meshharness.harness.polling import PollingTimeoutError, wait_for_condition
from meshharness.settings import settings

logger = logging.getLogger(__name__)


def load_manifests(
    *files: Union[str, Path], directory: Optional[Path] = None
) -> List[Manifest]:
    """Load manifests from YAML files, keeping file and document order.

    Relative names are resolved against ``directory``, then the configured
    manifests directory, then the bundled manifests.
    """
    base = directory or settings.manifests_dir or paths.manifests
    manifests: List[Manifest] = []
    for name in files:
        path = Path(name)
        if not path.is_absolute():
            path = base / path
        with open(path) as f:
            for document in yaml.safe_load_all(f):
                if document:
                    manifests.append(Manifest.from_document(document, source=path))
    return manifests


class _KindOps(NamedTuple):
    create: Callable[..., Any]
    read: Callable[..., Any]
    delete: Callable[..., Any]
    ready: Callable[[Manifest, Any], bool]


def _deployment_ready(manifest: Manifest, obj: Any) -> bool:
    status = obj.status
    ready = (status.ready_replicas or 0) if status else 0
    return ready >= manifest.desired_replicas


def _ingress_ready(manifest: Manifest, obj: Any) -> bool:
    status = obj.status
    load_balancer = status.load_balancer if status else None
    return bool(load_balancer and load_balancer.ingress)


def _always_ready(manifest: Manifest, obj: Any) -> bool:
    return True


class ManifestLifecycle:
    """Create or delete a set of manifests against the Kubernetes API.

    ``apis`` maps "core", "apps" and "networking" to CoreV1Api, AppsV1Api and
    NetworkingV1Api instances (or doubles of them).
    """

    def __init__(
        self,
        apis: Dict[str, Any],
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ):
        self.apis = apis
        self.timeout = timeout or settings.readiness_timeout
        self.interval = interval or settings.poll_interval

        core, apps, networking = apis["core"], apis["apps"], apis["networking"]
        self._ops: Dict[str, _KindOps] = {
            "ConfigMap": _KindOps(
                core.create_namespaced_config_map,
                core.read_namespaced_config_map,
                core.delete_namespaced_config_map,
                _always_ready,
            ),
            "Deployment": _KindOps(
                apps.create_namespaced_deployment,
                apps.read_namespaced_deployment,
                apps.delete_namespaced_deployment,
                _deployment_ready,
            ),
            "Service": _KindOps(
                core.create_namespaced_service,
                core.read_namespaced_service,
                core.delete_namespaced_service,
                _always_ready,
            ),
            "Ingress": _KindOps(
                networking.create_namespaced_ingress,
                networking.read_namespaced_ingress,
                networking.delete_namespaced_ingress,
                _ingress_ready,
            ),
        }

    def run(
        self, phase: Phase, namespace: str, manifests: Sequence[Manifest], wait: bool = True
    ) -> List[Manifest]:
        """Apply on CREATE, remove on DELETE."""
        if Phase(phase) is Phase.CREATE:
            return self.apply(namespace, manifests, wait_for_ready=wait)
        return self.remove(namespace, manifests, wait=wait)

    def apply(
        self,
        namespace: str,
        manifests: Sequence[Manifest],
        wait_for_ready: bool = True,
        timeout: Optional[float] = None,
    ) -> List[Manifest]:
        """Submit every manifest, then optionally wait until all are ready.

        Raises:
            ProvisioningFailure: If the API rejects a manifest.
            ReadinessTimeout: If resources are not ready within the timeout.
        """
        bound = [m.in_namespace(namespace) for m in manifests]
        for manifest in bound:
            self._create(manifest)

        if wait_for_ready:
            self._wait_until(bound, self._is_ready, timeout, "readiness")
        return bound

    def remove(
        self,
        namespace: str,
        manifests: Sequence[Manifest],
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> List[Manifest]:
        """Delete every manifest; resources that are already absent are skipped.

        A failed delete does not stop the remaining ones; the first failure
        is raised once all deletes were attempted.
        """
        bound = [m.in_namespace(namespace) for m in manifests]
        first_error: Optional[ProvisioningFailure] = None
        for manifest in bound:
            try:
                self._delete(manifest)
            except ProvisioningFailure as e:
                logger.error(str(e))
                first_error = first_error or e
        if first_error is not None:
            raise first_error

        if wait:
            self._wait_until(bound, self._is_gone, timeout, "removal")
        return bound

    def _create(self, manifest: Manifest) -> None:
        ops = self._ops[manifest.kind]
        logger.info(f"Creating {manifest}")
        try:
            ops.create(namespace=manifest.namespace, body=manifest.body)
        except ApiException as e:
            if e.status == 409:
                logger.warning(f"{manifest} already exists, reusing it")
                return
            raise ProvisioningFailure(f"Failed to create {manifest}: {e.reason}") from e

    def _delete(self, manifest: Manifest) -> None:
        ops = self._ops[manifest.kind]
        logger.info(f"Deleting {manifest}")
        try:
            ops.delete(
                name=manifest.name,
                namespace=manifest.namespace,
                propagation_policy="Foreground",
            )
        except ApiException as e:
            if e.status == 404:
                logger.info(f"{manifest} already absent")
                return
            raise ProvisioningFailure(f"Failed to delete {manifest}: {e.reason}") from e

    def _read(self, manifest: Manifest) -> Any:
        return self._ops[manifest.kind].read(name=manifest.name, namespace=manifest.namespace)

    def _is_ready(self, manifest: Manifest) -> bool:
        return self._ops[manifest.kind].ready(manifest, self._read(manifest))

    def _is_gone(self, manifest: Manifest) -> bool:
        try:
            self._read(manifest)
        except ApiException as e:
            if e.status == 404:
                return True
            raise
        return False

    def _wait_until(
        self,
        manifests: Iterable[Manifest],
        check: Callable[[Manifest], bool],
        timeout: Optional[float],
        what: str,
    ) -> None:
        pending = list(manifests)
        effective_timeout = timeout or self.timeout

        def _all_done() -> bool:
            pending[:] = [m for m in pending if not check(m)]
            return not pending

        try:
            wait_for_condition(
                _all_done,
                timeout=effective_timeout,
                interval=self.interval,
                description=f"{what} of {len(pending)} resource(s)",
            )
        except PollingTimeoutError as e:
            raise ReadinessTimeout(
                [m.identity() for m in pending], effective_timeout, e.last_error
            ) from e
