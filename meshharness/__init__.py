"""
Service Mesh Integration Harness

Reusable harness for cluster-backed integration tests: an ephemeral k3s
cluster, an Istio control plane, declarative workload manifests and a
retrying HTTP verification.

Flow:
    1. Start the cluster (ClusterHandle)
    2. Install the mesh control plane (MeshInstaller)
    3. Create workload manifests (ManifestLifecycle)
    4. Verify the workload over HTTP (VerifyingClient)
    5. Tear everything down in reverse
"""

__version__ = "1.0.0"
