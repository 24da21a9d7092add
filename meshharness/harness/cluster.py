"""Ephemeral k3s cluster handle.

A single privileged k3s container, started through the Docker SDK, serves as
both the Kubernetes control plane and the only node. Commands run inside the
container the same way ``kubectl`` would be run on a real control-plane host.
"""

import logging
import re
import tarfile
import tempfile
import uuid
from typing import Any, Dict, Optional

import docker
import yaml
from docker.errors import DockerException, ImageNotFound, NotFound
from kubernetes import config as k8s_config
from kubernetes.client import ApiClient

from meshharness.harness.errors import CommandFailure, ProvisioningFailure
from meshharness.harness.models import ExecResult
from meshharness.harness.polling import PollingTimeoutError, wait_for_condition
from meshharness.settings import settings

logger = logging.getLogger(__name__)

NODE_KUBECONFIG = "/etc/rancher/k3s/k3s.yaml"
API_PORT = 6443
INGRESS_PORT = 80

_NODE_READY_CMD = (
    "kubectl get nodes "
    "-o jsonpath='{.items[*].status.conditions[?(@.type==\"Ready\")].status}'"
)


def process_exec_result(command: str, result: ExecResult) -> str:
    """Return stdout of a successful command, raise CommandFailure otherwise."""
    if result.exit_code != 0:
        raise CommandFailure(command, result.exit_code, result.stdout, result.stderr)
    return result.stdout


class ClusterHandle:
    """Lifecycle and command execution for a single-node k3s cluster.

    Use as a context manager so that teardown happens exactly once, also when
    a later setup step fails::

        with ClusterHandle() as cluster:
            cluster.run("kubectl create namespace istio-test")
    """

    def __init__(
        self,
        image: Optional[str] = None,
        docker_client: Optional[docker.DockerClient] = None,
        startup_timeout: Optional[float] = None,
        poll_interval: float = 2.0,
        name: Optional[str] = None,
    ):
        self.image = image or settings.k3s_image
        self.startup_timeout = startup_timeout or settings.startup_timeout
        self.poll_interval = poll_interval
        self.name = name or f"meshharness-k3s-{uuid.uuid4().hex[:8]}"
        self._docker = docker_client
        self._container = None
        self._stopped = False

    @property
    def docker(self) -> docker.DockerClient:
        if self._docker is None:
            try:
                if settings.docker_host:
                    self._docker = docker.DockerClient(base_url=settings.docker_host)
                else:
                    self._docker = docker.from_env()
            except DockerException as e:
                raise ProvisioningFailure(f"Cannot connect to Docker: {e}") from e
        return self._docker

    @property
    def started(self) -> bool:
        return self._container is not None

    def __enter__(self) -> "ClusterHandle":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.stop()
            return
        # The propagating exception wins over a removal failure
        try:
            self.stop()
        except ProvisioningFailure as e:
            logger.error(f"{e} while handling {exc_type.__name__}")

    def start(self) -> "ClusterHandle":
        """Start the k3s container and block until its node reports Ready."""
        if self._stopped:
            raise ProvisioningFailure(f"Cluster {self.name} was already stopped")
        if self._container is not None:
            return self

        logger.info(f"Starting k3s cluster {self.name} from {self.image}")
        try:
            self._container = self.docker.containers.run(
                self.image,
                command=["server", "--disable=metrics-server"],
                name=self.name,
                privileged=True,
                detach=True,
                tmpfs={"/run": "", "/var/run": ""},
                ports={f"{API_PORT}/tcp": None, f"{INGRESS_PORT}/tcp": None},
                labels={"app.kubernetes.io/managed-by": "meshharness"},
            )
        except DockerException as e:
            self.stop()
            raise ProvisioningFailure(f"Failed to start k3s container: {e}") from e

        try:
            wait_for_condition(
                self._node_ready,
                timeout=self.startup_timeout,
                interval=self.poll_interval,
                description=f"k3s node in {self.name}",
            )
            self._container.reload()
        except (PollingTimeoutError, DockerException) as e:
            logs = self._tail_logs()
            self.stop()
            raise ProvisioningFailure(f"k3s cluster {self.name} did not become ready: {e}\n{logs}") from e

        logger.info(f"k3s cluster {self.name} is ready")
        return self

    def stop(self) -> None:
        """Remove the container. Only the first call reaches Docker."""
        if self._stopped:
            return
        self._stopped = True

        container, self._container = self._container, None
        if container is None:
            return

        logger.info(f"Stopping k3s cluster {self.name}")
        try:
            container.remove(force=True, v=True)
        except NotFound:
            logger.warning(f"k3s container {self.name} already removed")
        except DockerException as e:
            logger.error(f"Failed to remove k3s container {self.name}: {e}", exc_info=True)
            raise ProvisioningFailure(f"Failed to remove k3s container {self.name}") from e

    def exec(self, command: str) -> ExecResult:
        """Run ``sh -c command`` inside the node."""
        container = self._require_container()
        logger.debug(f"exec: {command}")
        try:
            exit_code, output = container.exec_run(["sh", "-c", command], demux=True)
        except DockerException as e:
            raise ProvisioningFailure(f"Cannot exec in {self.name}: {e}") from e

        stdout, stderr = output if output else (None, None)
        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            stdout=(stdout or b"").decode("utf-8", errors="replace"),
            stderr=(stderr or b"").decode("utf-8", errors="replace"),
        )

    def run(self, command: str) -> str:
        """Run a command and return its stdout, raising CommandFailure on non-zero exit."""
        return process_exec_result(command, self.exec(command))

    def mapped_port(self, container_port: int) -> int:
        """Host port published for a container TCP port."""
        container = self._require_container()
        ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{container_port}/tcp")
        if not bindings:
            raise ProvisioningFailure(f"Port {container_port} is not published by {self.name}")
        return int(bindings[0]["HostPort"])

    def kubeconfig(self) -> Dict[str, Any]:
        """The node's kubeconfig, pointed at the published API server port."""
        document = yaml.safe_load(self.run(f"cat {NODE_KUBECONFIG}"))
        server = f"https://127.0.0.1:{self.mapped_port(API_PORT)}"
        for cluster in document.get("clusters", []):
            cluster["cluster"]["server"] = server
        return document

    def api_client(self) -> ApiClient:
        """Kubernetes API client bound to this cluster."""
        return k8s_config.new_client_from_config_dict(self.kubeconfig())

    def ingress_url(self, path: str = "") -> str:
        return f"http://localhost:{self.mapped_port(INGRESS_PORT)}/{path.lstrip('/')}"

    def validate_image(self, image_name: str) -> None:
        """Fail unless the image exists in the host Docker engine."""
        try:
            self.docker.images.get(image_name)
        except ImageNotFound as e:
            raise ProvisioningFailure(
                f"Image {image_name} not found locally, build it before running the tests"
            ) from e

    def load_image(self, image_name: str, pull: bool = False) -> None:
        """Copy an image from the host Docker engine into the node's containerd.

        Args:
            image_name: Image reference as known to the host engine.
            pull: Pull the image first if the host does not have it.
        """
        container = self._require_container()
        try:
            image = self.docker.images.get(image_name)
        except ImageNotFound as e:
            if not pull:
                raise ProvisioningFailure(f"Image {image_name} not found locally") from e
            logger.info(f"Pulling {image_name}")
            try:
                image = self.docker.images.pull(image_name)
            except DockerException as pull_error:
                raise ProvisioningFailure(f"Failed to pull {image_name}: {pull_error}") from pull_error

        tar_name = re.sub(r"[^A-Za-z0-9_.-]", "_", image_name) + ".tar"
        logger.info(f"Loading {image_name} into {self.name}")
        try:
            with tempfile.TemporaryFile() as image_tar, tempfile.TemporaryFile() as archive:
                for chunk in image.save(named=True):
                    image_tar.write(chunk)
                size = image_tar.tell()
                image_tar.seek(0)

                with tarfile.open(fileobj=archive, mode="w") as tar:
                    info = tarfile.TarInfo(tar_name)
                    info.size = size
                    tar.addfile(info, image_tar)
                archive.seek(0)

                if not container.put_archive("/tmp", archive):
                    raise ProvisioningFailure(f"Failed to copy {image_name} into {self.name}")
        except DockerException as e:
            raise ProvisioningFailure(f"Failed to export {image_name}: {e}") from e

        self.run(f"ctr -n k8s.io images import /tmp/{tar_name}")
        self.run(f"rm -f /tmp/{tar_name}")

    def _node_ready(self) -> bool:
        result = self.exec(_NODE_READY_CMD)
        statuses = result.stdout.split()
        return result.ok and bool(statuses) and all(s == "True" for s in statuses)

    def _tail_logs(self) -> str:
        if self._container is None:
            return ""
        try:
            return self._container.logs(tail=50).decode("utf-8", errors="replace")
        except DockerException:
            return ""

    def _require_container(self):
        if self._container is None:
            raise ProvisioningFailure(f"Cluster {self.name} is not running")
        return self._container
