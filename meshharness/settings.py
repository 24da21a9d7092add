"""Harness settings and configuration management."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class HarnessSettings(BaseSettings):
    """Harness settings loaded from MESH_HARNESS_* environment variables."""

    # Cluster node
    k3s_image: str = Field(
        default="rancher/k3s:v1.28.8-k3s1",
        description="k3s image used for the ephemeral cluster node",
    )

    startup_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds to wait for the cluster node to become Ready",
    )

    docker_host: Optional[str] = Field(
        default=None,
        description="Docker daemon URL; the SDK default (DOCKER_HOST) when unset",
    )

    # Istio
    istio_version: str = Field(
        default="1.20.3",
        description="Istio release whose images are loaded into the cluster",
    )

    istio_hub: str = Field(
        default="docker.io/istio",
        description="Registry namespace for Istio images",
    )

    istio_profile: str = Field(
        default="minimal",
        description="Profile passed to istioctl install",
    )

    # Workload
    namespace: str = Field(
        default="istio-test",
        description="Namespace the sample workload is deployed into",
    )

    app_image: str = Field(
        default="docker.io/springcloud/spring-cloud-kubernetes-fabric8-client-istio:latest",
        description="Locally built application image loaded into the cluster",
    )

    manifests_dir: Optional[Path] = Field(
        default=None,
        description="Directory with workload manifests; the bundled ones when unset",
    )

    readiness_timeout: float = Field(
        default=600.0,
        gt=0,
        description="Seconds to wait for created resources to become ready",
    )

    poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between readiness polls",
    )

    # Verification
    ingress_path: str = Field(
        default="profiles",
        description="Path requested through the cluster ingress",
    )

    expected_profile: str = Field(
        default="istio",
        description="Value that must be present in the decoded response",
    )

    retry_attempts: int = Field(
        default=15,
        gt=0,
        description="Maximum number of verification attempts",
    )

    retry_delay: float = Field(
        default=1.0,
        ge=0,
        description="Fixed delay in seconds between verification attempts",
    )

    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Per-attempt HTTP timeout in seconds",
    )

    class Config:
        """Pydantic settings configuration."""

        env_prefix = "MESH_HARNESS_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False

    def istio_image(self, component: str) -> str:
        """Fully qualified image name for an Istio component (istioctl, pilot, proxyv2)."""
        return f"{self.istio_hub}/{component}:{self.istio_version}"


# Global settings instance
settings = HarnessSettings()
