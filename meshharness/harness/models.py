"""Pydantic models for harness configuration and data structures."""

import copy
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from meshharness.harness.errors import UnsupportedManifestError

SUPPORTED_KINDS = ("ConfigMap", "Deployment", "Service", "Ingress")


class Phase(str, Enum):
    """Direction of a manifest lifecycle operation."""

    CREATE = "create"
    DELETE = "delete"


class RequestState(str, Enum):
    """States of a verifying HTTP request."""

    IDLE = "idle"
    REQUESTING = "requesting"
    RETRYING = "retrying"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"

    @property
    def terminal(self) -> bool:
        return self in (RequestState.SUCCESS, RequestState.EXHAUSTED)


class ExecResult(BaseModel):
    """Outcome of a command run inside the cluster node."""

    exit_code: int = Field(description="Process exit code")
    stdout: str = Field(default="", description="Captured standard output")
    stderr: str = Field(default="", description="Captured standard error")

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def retry_on_any_error(error: BaseException) -> bool:
    """Default retry predicate: every failure is retryable."""
    return True


class RetrySpec(BaseModel):
    """Fixed-delay retry policy for a single HTTP call."""

    max_attempts: int = Field(default=15, gt=0, description="Maximum number of attempts")
    delay_seconds: float = Field(default=1.0, ge=0, description="Delay between attempts")
    predicate: Callable[[BaseException], bool] = Field(
        default=retry_on_any_error,
        description="Decides whether a failure is retried",
    )

    def should_retry(self, error: BaseException) -> bool:
        return bool(self.predicate(error))

    class Config:
        """Pydantic configuration."""

        frozen = True


class Manifest(BaseModel):
    """A declarative resource document, identified by (kind, namespace, name)."""

    kind: str = Field(description="Resource kind")
    api_version: str = Field(description="Resource apiVersion")
    name: str = Field(min_length=1, description="metadata.name")
    namespace: Optional[str] = Field(default=None, description="metadata.namespace")
    body: Dict[str, Any] = Field(description="Full resource document")
    source: Optional[Path] = Field(default=None, description="File the document came from")

    @classmethod
    def from_document(cls, document: Dict[str, Any], source: Optional[Path] = None) -> "Manifest":
        """Build a manifest from a parsed YAML document."""
        kind = document.get("kind", "")
        if kind not in SUPPORTED_KINDS:
            raise UnsupportedManifestError(kind, source)
        metadata = document.get("metadata") or {}
        return cls(
            kind=kind,
            api_version=document.get("apiVersion", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            body=document,
            source=source,
        )

    def identity(self, default_namespace: Optional[str] = None) -> Tuple[str, Optional[str], str]:
        return (self.kind, self.namespace or default_namespace, self.name)

    def in_namespace(self, namespace: str) -> "Manifest":
        """Return a copy bound to ``namespace`` unless one is already set."""
        if self.namespace:
            return self
        body = dict(self.body)
        body["metadata"] = {**(self.body.get("metadata") or {}), "namespace": namespace}
        return self.model_copy(update={"namespace": namespace, "body": body})

    def with_image(self, image: str) -> "Manifest":
        """Return a copy whose pod template containers all run ``image``.

        Manifests without a pod template are returned unchanged.
        """
        pod_spec = ((self.body.get("spec") or {}).get("template") or {}).get("spec") or {}
        if not pod_spec.get("containers"):
            return self
        body = copy.deepcopy(self.body)
        for container in body["spec"]["template"]["spec"]["containers"]:
            container["image"] = image
        return self.model_copy(update={"body": body})

    @property
    def desired_replicas(self) -> int:
        replicas = (self.body.get("spec") or {}).get("replicas")
        return 1 if replicas is None else int(replicas)

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace or '-'}/{self.name}"

    class Config:
        """Pydantic configuration."""

        frozen = True


class HarnessConfig(BaseModel):
    """Per-run harness configuration resolved from settings and pytest options."""

    namespace: str = Field(default="istio-test", description="Namespace for the workload")
    k3s_image: str = Field(description="k3s node image")
    app_image: str = Field(description="Application image loaded into the cluster")
    istio_profile: str = Field(default="minimal", description="istioctl install profile")
    startup_timeout: float = Field(default=300.0, gt=0, description="Cluster startup timeout")
    readiness_timeout: float = Field(default=600.0, gt=0, description="Resource readiness timeout")
    poll_interval: float = Field(default=2.0, gt=0, description="Readiness poll interval")
    manifests_dir: Path = Field(description="Directory holding the workload manifests")
    retry: RetrySpec = Field(default_factory=RetrySpec, description="Verification retry policy")
