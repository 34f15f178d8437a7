"""
Kubernetes input models.

Typed views of the Service and Node objects the convergence engine consumes.
Only the fields the engine reads are modelled; everything else in a manifest
is ignored.
"""

from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ObjectMeta(BaseModel):
    """Subset of Kubernetes ObjectMeta."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., description="Object name")
    namespace: str = Field("default", description="Object namespace")
    uid: Optional[str] = None
    annotations: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("annotations", "labels", mode="before")
    @classmethod
    def none_to_empty(cls, v: Optional[Dict[str, str]]) -> Dict[str, str]:
        return v or {}


class ServicePort(BaseModel):
    """A port exposed by a Service."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = None
    protocol: str = "TCP"
    port: int
    node_port: Optional[int] = Field(None, alias="nodePort")
    target_port: Optional[Union[int, str]] = Field(None, alias="targetPort")


class ServiceSpec(BaseModel):
    """Subset of Kubernetes ServiceSpec."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str = "ClusterIP"
    ports: List[ServicePort] = Field(default_factory=list)
    load_balancer_source_ranges: List[str] = Field(
        default_factory=list, alias="loadBalancerSourceRanges"
    )

    @field_validator("ports", "load_balancer_source_ranges", mode="before")
    @classmethod
    def none_to_empty(cls, v):
        return v or []


class Service(BaseModel):
    """A Kubernetes Service."""

    model_config = ConfigDict(extra="ignore")

    metadata: ObjectMeta
    spec: ServiceSpec = Field(default_factory=ServiceSpec)

    @property
    def key(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @property
    def annotations(self) -> Dict[str, str]:
        return self.metadata.annotations


class NodeAddress(BaseModel):
    """A Node address entry."""

    type: str
    address: str


class NodeSpec(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    provider_id: Optional[str] = Field(None, alias="providerID")


class NodeStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    addresses: List[NodeAddress] = Field(default_factory=list)


class Node(BaseModel):
    """A Kubernetes Node."""

    model_config = ConfigDict(extra="ignore")

    metadata: ObjectMeta
    spec: NodeSpec = Field(default_factory=NodeSpec)
    status: NodeStatus = Field(default_factory=NodeStatus)

    @property
    def instance_id(self) -> str:
        """
        Cloud instance id of the node.

        Taken from providerID ("qingcloud://<zone>/<id>" or "qingcloud://<id>"),
        falling back to the node name.
        """
        provider_id = self.spec.provider_id
        if provider_id and "://" in provider_id:
            return provider_id.split("://", 1)[1].rstrip("/").split("/")[-1]
        return self.metadata.name

    @property
    def internal_ip(self) -> str:
        for addr in self.status.addresses:
            if addr.type == "InternalIP":
                return addr.address
        return ""
