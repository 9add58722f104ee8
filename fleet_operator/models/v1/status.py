import datetime as dt
import typing as t

from kube_custom_resource import schema
from pydantic import Field


class ConditionStatus(str, schema.Enum):
    """
    The status of a condition.
    """

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(schema.BaseModel):
    """
    An observation of one aspect of the current state of a resource.
    """

    type: schema.constr(min_length=1) = Field(
        ..., description="The type of the condition, unique within a status."
    )
    status: ConditionStatus = Field(
        ConditionStatus.UNKNOWN.value, description="The status of the condition."
    )
    reason: str = Field(
        "", description="A machine-readable reason for the last transition."
    )
    message: str = Field(
        "", description="A human-readable message about the last transition."
    )
    last_transition_time: schema.Optional[dt.datetime] = Field(
        None,
        description="The last time at which the status of the condition changed.",
    )
    observed_generation: schema.Optional[schema.conint(ge=0)] = Field(
        None,
        description="The generation of the resource that the condition was set for.",
    )


class GenerationStatus(schema.BaseModel):
    """
    The last generation of a dependent resource that was observed by the operator.
    """

    group: str = Field("", description="The API group of the resource.")
    version: str = Field("", description="The API version of the resource.")
    resource: str = Field("", description="The plural name of the resource.")
    namespace: str = Field("", description="The namespace of the resource.")
    name: str = Field("", description="The name of the resource.")
    last_generation: int = Field(
        0, description="The last generation of the resource that was applied."
    )

    @property
    def key(self):
        """
        The tuple that identifies the resource that the generation is for.
        """
        return (self.group, self.version, self.resource, self.namespace, self.name)


class RelatedResourceMeta(schema.BaseModel):
    """
    Identifies a resource that is managed on behalf of a custom resource.
    """

    group: str = Field("", description="The API group of the resource.")
    version: str = Field("", description="The API version of the resource.")
    resource: str = Field("", description="The plural name of the resource.")
    namespace: str = Field("", description="The namespace of the resource.")
    name: str = Field("", description="The name of the resource.")

    @property
    def key(self):
        """
        The tuple that identifies the resource.
        """
        return (self.group, self.version, self.resource, self.namespace, self.name)


class OperatorStatus(schema.BaseModel, extra="allow"):
    """
    The status shared by the cluster manager and the klusterlet.
    """

    observed_generation: schema.conint(ge=0) = Field(
        0, description="The last generation of the resource that was reconciled."
    )
    conditions: list[Condition] = Field(
        default_factory=list, description="The current conditions of the resource."
    )
    generations: list[GenerationStatus] = Field(
        default_factory=list,
        description="The last observed generations of the dependent resources.",
    )
    related_resources: list[RelatedResourceMeta] = Field(
        default_factory=list,
        description="The resources that are managed on behalf of the resource.",
    )


class NodePlacement(schema.BaseModel):
    """
    Controls the nodes that the pods of managed deployments are scheduled on.
    """

    node_selector: schema.Dict[str, str] = Field(
        default_factory=dict, description="The node selector for the pods."
    )
    tolerations: list[schema.Dict[str, t.Any]] = Field(
        default_factory=list, description="The tolerations for the pods."
    )
