from easykube import ResourceSpec


Lease = ResourceSpec("coordination.k8s.io/v1", "leases", "Lease", True)
ManagedCluster = ResourceSpec(
    "cluster.open-cluster-management.io/v1",
    "managedclusters",
    "ManagedCluster",
    False
)
Secret = ResourceSpec("v1", "secrets", "Secret", True)
Node = ResourceSpec("v1", "nodes", "Node", False)
Deployment = ResourceSpec("apps/v1", "deployments", "Deployment", True)

OPERATOR_API_VERSION = "operator.open-cluster-management.io/v1"

ClusterManager = ResourceSpec(
    OPERATOR_API_VERSION,
    "clustermanagers",
    "ClusterManager",
    False
)
Klusterlet = ResourceSpec(OPERATOR_API_VERSION, "klusterlets", "Klusterlet", False)
