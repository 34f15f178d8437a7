"""
Core load balancer types and dataclasses.

Desired state is built once per reconciliation call, observed state is a
read-only snapshot of the cloud, and the plan is the transient diff between
the two. None of these objects outlive a single engine call.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ConvergencePhase(Enum):
    """Per-service convergence states."""

    ABSENT = "absent"
    CREATING = "creating"
    CONVERGING_LISTENERS = "converging_listeners"
    CONVERGING_SECURITY_GROUP = "converging_security_group"
    CONVERGING_TAGS = "converging_tags"
    READY = "ready"
    DELETING = "deleting"


class EIPStrategy(Enum):
    """How the external address of a load balancer is obtained."""

    REUSE = "reuse"
    ALLOCATE = "allocate"


@dataclass(frozen=True)
class Listener:
    """A (protocol, external port, target port) binding."""

    protocol: str
    port: int
    node_port: int

    @property
    def key(self) -> Tuple[str, int]:
        return (self.protocol, self.port)


@dataclass(frozen=True)
class BackendNode:
    """A cluster node serving as a backend."""

    node_id: str
    private_ip: str = ""


@dataclass(frozen=True)
class EIPSpec:
    """Desired EIP strategy."""

    strategy: EIPStrategy = EIPStrategy.ALLOCATE
    ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DesiredLoadBalancer:
    """Desired state derived from a Service, its nodes and annotations."""

    cluster_id: str
    namespace: str
    service_name: str
    name: str
    lb_type: int
    listeners: Tuple[Listener, ...]
    backends: Tuple[BackendNode, ...]
    eip: EIPSpec
    vxnet_id: str = ""
    source_ranges: Tuple[str, ...] = ()
    tag_ids: Tuple[str, ...] = ()

    @property
    def service_key(self) -> str:
        return f"{self.namespace}/{self.service_name}"


@dataclass(frozen=True)
class ObservedBackend:
    """A backend bound to a listener in the cloud."""

    backend_id: str
    node_id: str
    port: int


@dataclass(frozen=True)
class ObservedListener:
    """A listener as reported by the cloud, with its bound backends."""

    listener_id: str
    protocol: str
    port: int
    backends: Tuple[ObservedBackend, ...] = ()

    @property
    def key(self) -> Tuple[str, int]:
        return (self.protocol, self.port)


@dataclass(frozen=True)
class ElasticIP:
    """An elastic IP address resource."""

    eip_id: str
    address: str = ""
    name: str = ""
    owner: str = ""
    status: str = ""
    # id of the resource this EIP is associated with, empty if unbound
    resource_id: str = ""


@dataclass(frozen=True)
class ObservedLoadBalancer:
    """Snapshot of a load balancer as reported by the cloud."""

    lb_id: str
    name: str
    lb_type: int = 0
    status: str = ""
    listeners: Tuple[ObservedListener, ...] = ()
    eips: Tuple[ElasticIP, ...] = ()
    private_ips: Tuple[str, ...] = ()
    security_group_id: str = ""
    tag_ids: Tuple[str, ...] = ()
    # False while changes are pending an apply
    applied: bool = True

    @property
    def eip_ids(self) -> Tuple[str, ...]:
        return tuple(e.eip_id for e in self.eips)


@dataclass(frozen=True)
class SecurityGroupRule:
    """An ingress rule. Identity is (protocol, port, source)."""

    protocol: str
    port: int
    source: str = "0.0.0.0/0"
    rule_id: str = ""
    name: str = ""

    @property
    def key(self) -> Tuple[str, int, str]:
        return (self.protocol, self.port, self.source)


@dataclass(frozen=True)
class ObservedSecurityGroup:
    """Snapshot of a security group and its rules."""

    group_id: str
    name: str
    rules: Tuple[SecurityGroupRule, ...] = ()
    tag_ids: Tuple[str, ...] = ()


@dataclass
class ConvergencePlan:
    """Listener and backend changes needed to move observed to desired."""

    listeners_to_add: List[Listener] = field(default_factory=list)
    listeners_to_remove: List[ObservedListener] = field(default_factory=list)
    # (listener key, backend) pairs; listener ids are resolved at apply time
    backends_to_add: List[Tuple[Tuple[str, int], BackendNode, int]] = field(
        default_factory=list
    )
    backends_to_remove: List[ObservedBackend] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.listeners_to_add
            or self.listeners_to_remove
            or self.backends_to_add
            or self.backends_to_remove
        )


@dataclass
class EIPBinding:
    """Outcome of resolving the EIP strategy for one load balancer."""

    strategy: EIPStrategy
    eip_ids: List[str] = field(default_factory=list)
    attached: List[str] = field(default_factory=list)
    detached: List[str] = field(default_factory=list)
    allocated: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.attached or self.detached or self.allocated)


@dataclass
class LoadBalancerStatus:
    """Kubernetes-facing status: the ingress addresses of the load balancer."""

    ingress: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"ingress": [{"ip": ip} for ip in self.ingress]}


@dataclass
class CloudJob:
    """Result of a mutating call that may have started an asynchronous job."""

    resource_id: str = ""
    job_id: Optional[str] = None
