from kube_custom_resource import CustomResource, Scope, schema
from pydantic import Field

from .status import NodePlacement, OperatorStatus


class ClusterManagerSpec(schema.BaseModel):
    """
    The spec of a cluster manager, which deploys the hub components.
    """

    registration_image_pull_spec: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The image to use for the registration controller."
    )
    work_image_pull_spec: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The image to use for the work controller."
    )
    placement_image_pull_spec: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The image to use for the placement controller."
    )
    node_placement: NodePlacement = Field(
        default_factory=NodePlacement,
        description="Scheduling constraints for the hub deployments.",
    )


class ClusterManagerStatus(OperatorStatus):
    """
    The status of a cluster manager.
    """


class ClusterManager(
    CustomResource,
    scope=Scope.CLUSTER,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Applied",
            "type": "string",
            "jsonPath": ".status.conditions[?(@.type==\"Applied\")].status",
        },
    ],
):
    """
    The hub components of the fleet.
    """

    spec: ClusterManagerSpec = Field(default_factory=ClusterManagerSpec)
    status: ClusterManagerStatus = Field(default_factory=ClusterManagerStatus)
