from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    ValidationInfo,
    confloat,
    conint,
    constr,
    field_validator,
)


class StatusUpdateConfiguration(Section):
    """
    Configuration for the optimistic status update transaction.
    """

    #: The number of times a status update is retried after a conflict
    retries: conint(ge=0) = 4
    #: The initial number of seconds to wait before retrying after a conflict
    backoff_seconds: confloat(ge=0) = 0.01
    #: The factor by which the backoff grows with each retry
    backoff_factor: confloat(ge=1) = 5.0


class LeaseConfiguration(Section):
    """
    Configuration for the lease that reports the liveness of an agent.
    """

    #: The name of the lease in the cluster namespace on the hub
    name: constr(min_length=1) = "managed-cluster-lease"
    #: The lease duration to use when the managed cluster does not specify one
    #: The lease is renewed at roughly this cadence
    duration_seconds: conint(gt=0) = 60
    #: The maximum fraction of the interval that is added as jitter to each tick
    jitter_factor: confloat(ge=0) = 0.25


class AgentConfiguration(Section):
    """
    Configuration for the agent running on a managed cluster.
    """

    #: The name of the managed cluster that this agent reports for
    #: When not given, the lease controller is not started
    cluster_name: constr(min_length=1) | None = None
    #: The secret containing the kubeconfig used to talk to the hub
    #: When not given, the hub is assumed to be the cluster the operator runs in
    hub_kubeconfig_secret_name: constr(min_length=1) | None = None
    #: The namespace of the hub kubeconfig secret
    hub_kubeconfig_secret_namespace: constr(min_length=1) = (
        "open-cluster-management-agent"
    )


class ReplicaConfiguration(Section):
    """
    Replica counts for hub deployments, chosen by the number of control plane nodes.
    """

    #: The replica count used when there is at most one control plane node
    single: conint(ge=1) = 1
    #: The replica count used when there are multiple control plane nodes
    default: conint(ge=1) = Field(3, validate_default=True)

    @field_validator("default")
    @classmethod
    def validate_default(cls, v, info: ValidationInfo):
        """
        Ensures that the default replica count is not lower than the single count.
        """
        single = info.data.get("single")
        if single is not None and v < single:
            raise ValueError("must be greater than or equal to the single replica count")
        return v


class ManifestsConfiguration(Section):
    """
    Configuration for the static manifests applied by the operator.
    """

    #: The directory containing the manifest files
    directory: constr(min_length=1) = "/etc/fleet/manifests"
    #: The manifests applied for a cluster manager, in order
    cluster_manager: list[constr(min_length=1)] = Field(default_factory=list)
    #: The deployments applied for a cluster manager, in order
    cluster_manager_deployments: list[constr(min_length=1)] = Field(
        default_factory=list
    )
    #: The manifests applied for a klusterlet, in order
    klusterlet: list[constr(min_length=1)] = Field(default_factory=list)
    #: The deployments applied for a klusterlet, in order
    klusterlet_deployments: list[constr(min_length=1)] = Field(default_factory=list)


class Configuration(
    BaseConfiguration,
    default_path="/etc/fleet/operator.yaml",
    path_env_var="FLEET_OPERATOR_CONFIG",
    env_prefix="FLEET_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the operator CRDs
    api_group: constr(min_length=1) = "operator.open-cluster-management.io"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["open-cluster-management"]
    )

    #: The prefix to use for operator annotations
    annotation_prefix: str = "operator.open-cluster-management.io"

    #: The number of seconds to wait between timer executions
    timer_interval: conint(gt=0) = 60

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "fleet-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The status update configuration
    status: StatusUpdateConfiguration = Field(
        default_factory=StatusUpdateConfiguration
    )

    #: The lease configuration
    lease: LeaseConfiguration = Field(default_factory=LeaseConfiguration)

    #: The agent configuration
    agent: AgentConfiguration = Field(default_factory=AgentConfiguration)

    #: The replica configuration for hub deployments
    replicas: ReplicaConfiguration = Field(default_factory=ReplicaConfiguration)

    #: The static manifests configuration
    manifests: ManifestsConfiguration = Field(default_factory=ManifestsConfiguration)


settings = Configuration()
