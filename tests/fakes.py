"""In-memory fake cloud implementing the executor interfaces, for tests."""

import itertools
from typing import Any, Dict, List, Optional, Sequence, Tuple

from errors import NotFoundError
from executors.base import (
    EIPAPI,
    JobAPI,
    LoadBalancerExecutor,
    SecurityGroupExecutor,
    TagAPI,
)
from k8s import Node, Service
from loadbalancer import LoadBalancerEngine
from models import (
    BackendNode,
    CloudJob,
    DesiredLoadBalancer,
    ElasticIP,
    Listener,
    ObservedBackend,
    ObservedListener,
    ObservedLoadBalancer,
    ObservedSecurityGroup,
    SecurityGroupRule,
)
from validation import ANNOTATION_PREFIX


class FakeCloud:
    """Shared state and call log of the fake executors."""

    def __init__(self, user_id: str = "usr-test"):
        self.user_id = user_id
        self.lbs: Dict[str, Dict[str, Any]] = {}
        self.eips: Dict[str, Dict[str, Any]] = {}
        self.sgs: Dict[str, Dict[str, Any]] = {}
        self.jobs: Dict[str, str] = {}
        self.calls: List[Tuple[str, tuple]] = []
        # method name -> exception raised on the next call
        self.fail_on: Dict[str, Exception] = {}
        self._ids = itertools.count(1)

        self.lb = FakeLoadBalancerExecutor(self)
        self.sg = FakeSecurityGroupExecutor(self)
        self.eip = FakeEIPAPI(self)
        self.job = FakeJobAPI(self)
        self.tag = FakeTagAPI(self)

    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids):08d}"

    def record(self, name: str, *args, mutating: bool = True) -> None:
        if mutating:
            self.calls.append((name, args))
        if name in self.fail_on:
            raise self.fail_on.pop(name)

    def new_job(self) -> str:
        job_id = self.new_id("j")
        self.jobs[job_id] = "successful"
        return job_id

    @property
    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    def reset_calls(self) -> None:
        self.calls.clear()

    # Helpers for seeding state

    def add_eip(self, name: str = "", owner: Optional[str] = None, resource_id: str = "") -> str:
        eip_id = f"eip-{next(self._ids):08d}"
        self.eips[eip_id] = {
            "name": name,
            "address": f"139.198.0.{len(self.eips) + 1}",
            "owner": self.user_id if owner is None else owner,
            "resource_id": resource_id,
        }
        return eip_id

    def add_security_group(self, name: str, rules: Sequence[SecurityGroupRule] = ()) -> str:
        sg_id = self.new_id("sg")
        self.sgs[sg_id] = {
            "name": name,
            "rules": {},
            "tags": [],
        }
        for rule in rules:
            rule_id = rule.rule_id or self.new_id("sgr")
            self.sgs[sg_id]["rules"][rule_id] = SecurityGroupRule(
                protocol=rule.protocol,
                port=rule.port,
                source=rule.source,
                rule_id=rule_id,
                name=rule.name,
            )
        return sg_id

    def lb_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        for lb in self.lbs.values():
            if lb["name"] == name:
                return lb
        return None


class FakeLoadBalancerExecutor(LoadBalancerExecutor):
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def _lb(self, lb_id: str) -> Dict[str, Any]:
        if lb_id not in self.cloud.lbs:
            raise NotFoundError(f"Load balancer {lb_id} not found")
        return self.cloud.lbs[lb_id]

    def _listener_owner(self, listener_id: str) -> Dict[str, Any]:
        for lb in self.cloud.lbs.values():
            if listener_id in lb["listeners"]:
                return lb
        raise NotFoundError(f"Listener {listener_id} not found")

    async def get_by_name(self, name: str) -> Optional[ObservedLoadBalancer]:
        self.cloud.record("lb.get_by_name", name, mutating=False)
        lb = self.cloud.lb_by_name(name)
        if lb is None:
            return None
        listeners = tuple(
            ObservedListener(
                listener_id=lid,
                protocol=l["protocol"],
                port=l["port"],
                backends=tuple(
                    ObservedBackend(backend_id=bid, node_id=node, port=port)
                    for bid, (node, port) in l["backends"].items()
                ),
            )
            for lid, l in lb["listeners"].items()
        )
        eips = tuple(
            ElasticIP(
                eip_id=e,
                address=self.cloud.eips[e]["address"],
                name=self.cloud.eips[e]["name"],
                resource_id=lb["id"],
            )
            for e in lb["eips"]
        )
        return ObservedLoadBalancer(
            lb_id=lb["id"],
            name=lb["name"],
            lb_type=lb["type"],
            status="active",
            listeners=listeners,
            eips=eips,
            private_ips=tuple(lb["private_ips"]),
            security_group_id=lb["sg"],
            tag_ids=tuple(lb["tags"]),
            applied=lb.get("applied", True),
        )

    async def create(self, desired: DesiredLoadBalancer) -> CloudJob:
        self.cloud.record("lb.create", desired.name)
        lb_id = self.cloud.new_id("lb")
        self.cloud.lbs[lb_id] = {
            "id": lb_id,
            "name": desired.name,
            "type": desired.lb_type,
            "vxnet": desired.vxnet_id,
            "listeners": {},
            "eips": [],
            "private_ips": ["192.168.0.10"],
            "sg": "",
            "tags": [],
            "applied": True,
        }
        return CloudJob(resource_id=lb_id, job_id=self.cloud.new_job())

    async def resize(self, lb_id: str, lb_type: int) -> Optional[str]:
        self.cloud.record("lb.resize", lb_id, lb_type)
        self._lb(lb_id)["type"] = lb_type
        return self.cloud.new_job()

    async def delete(self, lb_id: str) -> Optional[str]:
        self.cloud.record("lb.delete", lb_id)
        lb = self._lb(lb_id)
        for eip_id in lb["eips"]:
            self.cloud.eips[eip_id]["resource_id"] = ""
        del self.cloud.lbs[lb_id]
        return self.cloud.new_job()

    async def add_listeners(self, lb_id: str, listeners: Sequence[Listener]) -> List[str]:
        self.cloud.record("lb.add_listeners", lb_id, tuple(l.key for l in listeners))
        lb = self._lb(lb_id)
        lb["applied"] = False
        ids = []
        for listener in listeners:
            lid = self.cloud.new_id("lbl")
            lb["listeners"][lid] = {
                "protocol": listener.protocol,
                "port": listener.port,
                "backends": {},
            }
            ids.append(lid)
        return ids

    async def delete_listeners(self, listener_ids: Sequence[str]) -> None:
        self.cloud.record("lb.delete_listeners", tuple(listener_ids))
        for lid in listener_ids:
            lb = self._listener_owner(lid)
            lb["applied"] = False
            del lb["listeners"][lid]

    async def add_backends(
        self, listener_id: str, backends: Sequence[BackendNode], port: int
    ) -> None:
        self.cloud.record(
            "lb.add_backends", listener_id, tuple(b.node_id for b in backends), port
        )
        lb = self._listener_owner(listener_id)
        lb["applied"] = False
        listener = lb["listeners"][listener_id]
        for backend in backends:
            listener["backends"][self.cloud.new_id("lbb")] = (backend.node_id, port)

    async def delete_backends(self, backend_ids: Sequence[str]) -> None:
        self.cloud.record("lb.delete_backends", tuple(backend_ids))
        for lb in self.cloud.lbs.values():
            for listener in lb["listeners"].values():
                for bid in backend_ids:
                    if listener["backends"].pop(bid, None):
                        lb["applied"] = False

    async def associate_eips(self, lb_id: str, eip_ids: Sequence[str]) -> Optional[str]:
        self.cloud.record("lb.associate_eips", lb_id, tuple(eip_ids))
        lb = self._lb(lb_id)
        for eip_id in eip_ids:
            lb["eips"].append(eip_id)
            self.cloud.eips[eip_id]["resource_id"] = lb_id
        return self.cloud.new_job()

    async def dissociate_eips(self, lb_id: str, eip_ids: Sequence[str]) -> Optional[str]:
        self.cloud.record("lb.dissociate_eips", lb_id, tuple(eip_ids))
        lb = self._lb(lb_id)
        for eip_id in eip_ids:
            lb["eips"].remove(eip_id)
            self.cloud.eips[eip_id]["resource_id"] = ""
        return self.cloud.new_job()

    async def attach_security_group(self, lb_id: str, group_id: str) -> None:
        self.cloud.record("lb.attach_security_group", lb_id, group_id)
        self._lb(lb_id)["sg"] = group_id
        self._lb(lb_id)["applied"] = False

    async def apply(self, lb_id: str) -> Optional[str]:
        self.cloud.record("lb.apply", lb_id)
        self._lb(lb_id)["applied"] = True
        return self.cloud.new_job()


class FakeSecurityGroupExecutor(SecurityGroupExecutor):
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def _observe(self, sg_id: str) -> ObservedSecurityGroup:
        sg = self.cloud.sgs[sg_id]
        return ObservedSecurityGroup(
            group_id=sg_id,
            name=sg["name"],
            rules=tuple(sg["rules"].values()),
            tag_ids=tuple(sg["tags"]),
        )

    async def get(self, group_id: str) -> Optional[ObservedSecurityGroup]:
        self.cloud.record("sg.get", group_id, mutating=False)
        if group_id not in self.cloud.sgs:
            return None
        return self._observe(group_id)

    async def get_by_name(self, name: str) -> Optional[ObservedSecurityGroup]:
        self.cloud.record("sg.get_by_name", name, mutating=False)
        for sg_id, sg in self.cloud.sgs.items():
            if sg["name"] == name:
                return self._observe(sg_id)
        return None

    async def create(self, name: str) -> str:
        self.cloud.record("sg.create", name)
        return self.cloud.add_security_group(name)

    async def add_rules(
        self, group_id: str, rules: Sequence[SecurityGroupRule], owner: str
    ) -> None:
        self.cloud.record("sg.add_rules", group_id, tuple(r.key for r in rules))
        for rule in rules:
            rule_id = self.cloud.new_id("sgr")
            self.cloud.sgs[group_id]["rules"][rule_id] = SecurityGroupRule(
                protocol=rule.protocol,
                port=rule.port,
                source=rule.source,
                rule_id=rule_id,
                name=owner,
            )

    async def delete_rules(self, rule_ids: Sequence[str]) -> None:
        self.cloud.record("sg.delete_rules", tuple(rule_ids))
        for sg in self.cloud.sgs.values():
            for rule_id in rule_ids:
                sg["rules"].pop(rule_id, None)

    async def apply(self, group_id: str) -> Optional[str]:
        self.cloud.record("sg.apply", group_id)
        return self.cloud.new_job()

    async def delete(self, group_id: str) -> None:
        self.cloud.record("sg.delete", group_id)
        if group_id not in self.cloud.sgs:
            raise NotFoundError(f"Security group {group_id} not found")
        del self.cloud.sgs[group_id]


class FakeEIPAPI(EIPAPI):
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def _observe(self, eip_id: str) -> ElasticIP:
        e = self.cloud.eips[eip_id]
        return ElasticIP(
            eip_id=eip_id,
            address=e["address"],
            name=e["name"],
            owner=e["owner"],
            status="associated" if e["resource_id"] else "available",
            resource_id=e["resource_id"],
        )

    async def describe(self, eip_ids: Sequence[str]) -> List[ElasticIP]:
        self.cloud.record("eip.describe", tuple(eip_ids), mutating=False)
        return [self._observe(i) for i in eip_ids if i in self.cloud.eips]

    async def find_by_name(self, name: str) -> List[ElasticIP]:
        self.cloud.record("eip.find_by_name", name, mutating=False)
        return [self._observe(i) for i, e in self.cloud.eips.items() if e["name"] == name]

    async def allocate(self, name: str, bandwidth: int, billing_mode: str) -> CloudJob:
        self.cloud.record("eip.allocate", name)
        return CloudJob(resource_id=self.cloud.add_eip(name=name), job_id=self.cloud.new_job())

    async def release(self, eip_ids: Sequence[str]) -> Optional[str]:
        self.cloud.record("eip.release", tuple(eip_ids))
        for eip_id in eip_ids:
            if eip_id not in self.cloud.eips:
                raise NotFoundError(f"EIP {eip_id} not found")
            del self.cloud.eips[eip_id]
        return self.cloud.new_job()


class FakeJobAPI(JobAPI):
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    async def describe_job(self, job_id: str) -> str:
        self.cloud.record("job.describe", job_id, mutating=False)
        return self.cloud.jobs.get(job_id, "failed")


class FakeTagAPI(TagAPI):
    def __init__(self, cloud: FakeCloud):
        self.cloud = cloud

    def _tags(self, resource_type: str, resource_id: str) -> list:
        if resource_type == "loadbalancer":
            return self.cloud.lbs[resource_id]["tags"]
        return self.cloud.sgs[resource_id]["tags"]

    async def attach(self, resource_type: str, resource_id: str, tag_ids: Sequence[str]) -> None:
        self.cloud.record("tag.attach", resource_type, resource_id, tuple(tag_ids))
        tags = self._tags(resource_type, resource_id)
        tags.extend(t for t in tag_ids if t not in tags)

    async def detach(self, resource_type: str, resource_id: str, tag_ids: Sequence[str]) -> None:
        self.cloud.record("tag.detach", resource_type, resource_id, tuple(tag_ids))
        tags = self._tags(resource_type, resource_id)
        tags[:] = [t for t in tags if t not in tag_ids]


def make_service(
    name="web",
    namespace="default",
    ports=((80, 30080),),
    protocol="TCP",
    annotations=None,
    source_ranges=None,
):
    """Build a LoadBalancer Service from (port, nodePort) pairs."""
    return Service.model_validate(
        {
            "metadata": {
                "name": name,
                "namespace": namespace,
                "annotations": annotations or {},
            },
            "spec": {
                "type": "LoadBalancer",
                "ports": [
                    {"protocol": protocol, "port": port, "nodePort": node_port}
                    for port, node_port in ports
                ],
                "loadBalancerSourceRanges": source_ranges,
            },
        }
    )


def make_node(instance_id, address="10.0.0.1"):
    return Node.model_validate(
        {
            "metadata": {"name": f"node-{instance_id}"},
            "spec": {"providerID": f"qingcloud://ap2a/{instance_id}"},
            "status": {"addresses": [{"type": "InternalIP", "address": address}]},
        }
    )


def annotation(suffix):
    return ANNOTATION_PREFIX + suffix


def build_engine(config, cloud, on_phase=None):
    return LoadBalancerEngine(
        config=config,
        lb_executor=cloud.lb,
        sg_executor=cloud.sg,
        eip_api=cloud.eip,
        job_api=cloud.job,
        tag_api=cloud.tag,
        on_phase=on_phase,
    )
