"""Harness components for cluster-backed integration tests."""

from meshharness.harness.client import VerifyingClient, assert_contains
from meshharness.harness.cluster import ClusterHandle, process_exec_result
from meshharness.harness.environment import MeshEnvironment, mesh_environment
from meshharness.harness.errors import (
    CommandFailure,
    HarnessError,
    ProvisioningFailure,
    ReadinessTimeout,
    RequestFailure,
    UnsupportedManifestError,
)
from meshharness.harness.manifests import ManifestLifecycle, load_manifests
from meshharness.harness.mesh import MeshInstaller
from meshharness.harness.models import (
    ExecResult,
    HarnessConfig,
    Manifest,
    Phase,
    RequestState,
    RetrySpec,
)

__all__ = [
    # Components
    "ClusterHandle",
    "ManifestLifecycle",
    "VerifyingClient",
    "MeshInstaller",
    "MeshEnvironment",
    "mesh_environment",
    "load_manifests",
    "process_exec_result",
    "assert_contains",
    # Models
    "ExecResult",
    "HarnessConfig",
    "Manifest",
    "Phase",
    "RequestState",
    "RetrySpec",
    # Errors
    "HarnessError",
    "ProvisioningFailure",
    "CommandFailure",
    "ReadinessTimeout",
    "RequestFailure",
    "UnsupportedManifestError",
]
