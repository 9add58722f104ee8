from kube_custom_resource import CustomResource, Scope, schema
from pydantic import Field

from .status import NodePlacement, OperatorStatus


class InstallMode(str, schema.Enum):
    """
    The mode in which the klusterlet agents are deployed.
    """

    DEFAULT = "Default"
    DETACHED = "Detached"
    HOSTED = "Hosted"


class DeployOption(schema.BaseModel):
    """
    Options for deploying the klusterlet agents.
    """

    mode: InstallMode = Field(
        InstallMode.DEFAULT.value, description="The install mode of the klusterlet."
    )


class KlusterletSpec(schema.BaseModel):
    """
    The spec of a klusterlet, which deploys the agents on a managed cluster.
    """

    cluster_name: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The name of the managed cluster on the hub."
    )
    namespace: schema.Optional[str] = Field(
        None, description="The namespace to deploy the agents into."
    )
    deploy_option: DeployOption = Field(
        default_factory=DeployOption, description="Options for deploying the agents."
    )
    registration_image_pull_spec: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The image to use for the registration agent."
    )
    work_image_pull_spec: schema.Optional[schema.constr(min_length=1)] = Field(
        None, description="The image to use for the work agent."
    )
    node_placement: NodePlacement = Field(
        default_factory=NodePlacement,
        description="Scheduling constraints for the agent deployments.",
    )


class KlusterletStatus(OperatorStatus):
    """
    The status of a klusterlet.
    """


class Klusterlet(
    CustomResource,
    scope=Scope.CLUSTER,
    subresources={"status": {}},
    printer_columns=[
        {
            "name": "Cluster",
            "type": "string",
            "jsonPath": ".spec.clusterName",
        },
        {
            "name": "Mode",
            "type": "string",
            "jsonPath": ".spec.deployOption.mode",
            "priority": 1,
        },
    ],
):
    """
    The agents for a managed cluster.
    """

    spec: KlusterletSpec = Field(default_factory=KlusterletSpec)
    status: KlusterletStatus = Field(default_factory=KlusterletStatus)
