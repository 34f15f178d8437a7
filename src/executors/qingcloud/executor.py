"""
QingCloud executors - implement the executor interfaces on the IaaS API.

Each method is a single API call (or a describe followed by a detail call)
translated to and from the engine's dataclasses.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

from errors import NotFoundError
from executors.base import (
    EIPAPI,
    JobAPI,
    LoadBalancerExecutor,
    SecurityGroupExecutor,
    TagAPI,
)
from executors.qingcloud.client import QingCloudClient
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

logger = logging.getLogger(__name__)

# Load balancers in these states are gone or going away
LB_INACTIVE_STATES = ("deleted", "ceased")
DEFAULT_BALANCE_MODE = "roundrobin"
RULE_PRIORITY = 1


def _tag_ids(item: Dict[str, Any]) -> tuple:
    return tuple(t["tag_id"] for t in item.get("tags") or [] if t.get("tag_id"))


def _parse_eip(item: Dict[str, Any]) -> ElasticIP:
    resource = item.get("resource") or {}
    return ElasticIP(
        eip_id=item["eip_id"],
        address=item.get("eip_addr", ""),
        name=item.get("eip_name", ""),
        owner=item.get("owner", ""),
        status=item.get("status", ""),
        resource_id=resource.get("resource_id", ""),
    )


class QingCloudLoadBalancerExecutor(LoadBalancerExecutor):
    """Load balancer, listener and backend calls."""

    def __init__(self, client: QingCloudClient):
        self.client = client

    async def _describe_listeners(self, lb_id: str) -> List[ObservedListener]:
        body = await self.client.call(
            "DescribeLoadBalancerListeners",
            {"loadbalancer": lb_id, "verbose": 1, "limit": 100},
        )
        listeners = []
        for item in body.get("loadbalancer_listener_set") or []:
            backends = tuple(
                ObservedBackend(
                    backend_id=b["loadbalancer_backend_id"],
                    node_id=b.get("resource_id", ""),
                    port=int(b.get("port", 0)),
                )
                for b in item.get("backends") or []
            )
            listeners.append(
                ObservedListener(
                    listener_id=item["loadbalancer_listener_id"],
                    protocol=item.get("listener_protocol", "tcp"),
                    port=int(item["listener_port"]),
                    backends=backends,
                )
            )
        return listeners

    async def get_by_name(self, name: str) -> Optional[ObservedLoadBalancer]:
        body = await self.client.call(
            "DescribeLoadBalancers", {"search_word": name, "verbose": 1}
        )
        matches = [
            lb
            for lb in body.get("loadbalancer_set") or []
            if lb.get("loadbalancer_name") == name
            and lb.get("status") not in LB_INACTIVE_STATES
        ]
        if not matches:
            return None
        if len(matches) > 1:
            logger.warning(
                f"Found {len(matches)} load balancers named {name}, using the first"
            )
        lb = matches[0]

        listeners = await self._describe_listeners(lb["loadbalancer_id"])
        return ObservedLoadBalancer(
            lb_id=lb["loadbalancer_id"],
            name=lb["loadbalancer_name"],
            lb_type=int(lb.get("loadbalancer_type", 0)),
            status=lb.get("status", ""),
            listeners=tuple(listeners),
            eips=tuple(
                ElasticIP(
                    eip_id=e["eip_id"],
                    address=e.get("eip_addr", ""),
                    name=e.get("eip_name", ""),
                    resource_id=lb["loadbalancer_id"],
                )
                for e in lb.get("eips") or []
            ),
            private_ips=tuple(lb.get("private_ips") or ()),
            security_group_id=lb.get("security_group_id") or "",
            tag_ids=_tag_ids(lb),
            applied=bool(lb.get("is_applied", 1)),
        )

    async def create(self, desired: DesiredLoadBalancer) -> CloudJob:
        body = await self.client.call(
            "CreateLoadBalancer",
            {
                "loadbalancer_name": desired.name,
                "loadbalancer_type": desired.lb_type,
                "vxnet": desired.vxnet_id or None,
            },
        )
        return CloudJob(resource_id=body["loadbalancer_id"], job_id=body.get("job_id"))

    async def resize(self, lb_id: str, lb_type: int) -> Optional[str]:
        body = await self.client.call(
            "ResizeLoadBalancers",
            {"loadbalancers": [lb_id], "loadbalancer_type": lb_type},
        )
        return body.get("job_id")

    async def delete(self, lb_id: str) -> Optional[str]:
        body = await self.client.call("DeleteLoadBalancers", {"loadbalancers": [lb_id]})
        return body.get("job_id")

    async def add_listeners(
        self, lb_id: str, listeners: Sequence[Listener]
    ) -> List[str]:
        body = await self.client.call(
            "AddLoadBalancerListeners",
            {
                "loadbalancer": lb_id,
                "listeners": [
                    {
                        "listener_protocol": l.protocol,
                        "listener_port": l.port,
                        "backend_protocol": l.protocol,
                        "balance_mode": DEFAULT_BALANCE_MODE,
                        "loadbalancer_listener_name": f"{l.protocol}-{l.port}",
                    }
                    for l in listeners
                ],
            },
        )
        return list(body.get("loadbalancer_listeners") or [])

    async def delete_listeners(self, listener_ids: Sequence[str]) -> None:
        await self.client.call(
            "DeleteLoadBalancerListeners", {"loadbalancer_listeners": list(listener_ids)}
        )

    async def add_backends(
        self, listener_id: str, backends: Sequence[BackendNode], port: int
    ) -> None:
        await self.client.call(
            "AddLoadBalancerBackends",
            {
                "loadbalancer_listener": listener_id,
                "backends": [
                    {
                        "resource_id": b.node_id,
                        "port": port,
                        "weight": 1,
                        "loadbalancer_backend_name": b.node_id,
                    }
                    for b in backends
                ],
            },
        )

    async def delete_backends(self, backend_ids: Sequence[str]) -> None:
        await self.client.call(
            "DeleteLoadBalancerBackends", {"loadbalancer_backends": list(backend_ids)}
        )

    async def associate_eips(self, lb_id: str, eip_ids: Sequence[str]) -> Optional[str]:
        body = await self.client.call(
            "AssociateEipsToLoadBalancer", {"loadbalancer": lb_id, "eips": list(eip_ids)}
        )
        return body.get("job_id")

    async def dissociate_eips(
        self, lb_id: str, eip_ids: Sequence[str]
    ) -> Optional[str]:
        body = await self.client.call(
            "DissociateEipsFromLoadBalancer",
            {"loadbalancer": lb_id, "eips": list(eip_ids)},
        )
        return body.get("job_id")

    async def attach_security_group(self, lb_id: str, group_id: str) -> None:
        await self.client.call(
            "ModifyLoadBalancerAttributes",
            {"loadbalancer": lb_id, "security_group": group_id},
        )

    async def apply(self, lb_id: str) -> Optional[str]:
        body = await self.client.call("UpdateLoadBalancers", {"loadbalancers": [lb_id]})
        return body.get("job_id")


class QingCloudSecurityGroupExecutor(SecurityGroupExecutor):
    """Security group and rule calls."""

    def __init__(self, client: QingCloudClient):
        self.client = client

    async def _with_rules(self, item: Dict[str, Any]) -> ObservedSecurityGroup:
        group_id = item["security_group_id"]
        body = await self.client.call(
            "DescribeSecurityGroupRules",
            {"security_group": group_id, "direction": 0, "limit": 100},
        )
        rules = tuple(
            SecurityGroupRule(
                protocol=r.get("protocol", ""),
                port=int(r["val1"]) if str(r.get("val1", "")).isdigit() else 0,
                source=r.get("val3") or "0.0.0.0/0",
                rule_id=r["security_group_rule_id"],
                name=r.get("security_group_rule_name", ""),
            )
            for r in body.get("security_group_rule_set") or []
        )
        return ObservedSecurityGroup(
            group_id=group_id,
            name=item.get("security_group_name", ""),
            rules=rules,
            tag_ids=_tag_ids(item),
        )

    async def get(self, group_id: str) -> Optional[ObservedSecurityGroup]:
        try:
            body = await self.client.call(
                "DescribeSecurityGroups",
                {"security_groups": [group_id], "verbose": 1},
            )
        except NotFoundError:
            return None
        groups = body.get("security_group_set") or []
        if not groups:
            return None
        return await self._with_rules(groups[0])

    async def get_by_name(self, name: str) -> Optional[ObservedSecurityGroup]:
        body = await self.client.call(
            "DescribeSecurityGroups", {"search_word": name, "verbose": 1}
        )
        for item in body.get("security_group_set") or []:
            if item.get("security_group_name") == name:
                return await self._with_rules(item)
        return None

    async def create(self, name: str) -> str:
        body = await self.client.call(
            "CreateSecurityGroup", {"security_group_name": name}
        )
        return body["security_group_id"]

    async def add_rules(
        self, group_id: str, rules: Sequence[SecurityGroupRule], owner: str
    ) -> None:
        await self.client.call(
            "AddSecurityGroupRules",
            {
                "security_group": group_id,
                "rules": [
                    {
                        "protocol": r.protocol,
                        "priority": RULE_PRIORITY,
                        "action": "accept",
                        "direction": 0,
                        "val1": r.port,
                        "val3": r.source,
                        "security_group_rule_name": owner,
                    }
                    for r in rules
                ],
            },
        )

    async def delete_rules(self, rule_ids: Sequence[str]) -> None:
        await self.client.call(
            "DeleteSecurityGroupRules", {"security_group_rules": list(rule_ids)}
        )

    async def apply(self, group_id: str) -> Optional[str]:
        body = await self.client.call("ApplySecurityGroup", {"security_group": group_id})
        return body.get("job_id")

    async def delete(self, group_id: str) -> None:
        await self.client.call("DeleteSecurityGroups", {"security_groups": [group_id]})


class QingCloudEIPAPI(EIPAPI):
    """Elastic IP calls."""

    def __init__(self, client: QingCloudClient):
        self.client = client

    async def describe(self, eip_ids: Sequence[str]) -> List[ElasticIP]:
        if not eip_ids:
            return []
        try:
            body = await self.client.call(
                "DescribeEips", {"eips": list(eip_ids), "limit": len(eip_ids)}
            )
        except NotFoundError:
            return []
        return [_parse_eip(e) for e in body.get("eip_set") or []]

    async def find_by_name(self, name: str) -> List[ElasticIP]:
        body = await self.client.call("DescribeEips", {"search_word": name})
        return [
            _parse_eip(e)
            for e in body.get("eip_set") or []
            if e.get("eip_name") == name and e.get("status") not in ("released", "ceased")
        ]

    async def allocate(self, name: str, bandwidth: int, billing_mode: str) -> CloudJob:
        body = await self.client.call(
            "AllocateEips",
            {
                "eip_name": name,
                "bandwidth": bandwidth,
                "billing_mode": billing_mode,
                "count": 1,
                "need_icp": 0,
            },
        )
        return CloudJob(resource_id=body["eips"][0], job_id=body.get("job_id"))

    async def release(self, eip_ids: Sequence[str]) -> Optional[str]:
        body = await self.client.call("ReleaseEips", {"eips": list(eip_ids)})
        return body.get("job_id")


class QingCloudJobAPI(JobAPI):
    """Job status calls."""

    def __init__(self, client: QingCloudClient):
        self.client = client

    async def describe_job(self, job_id: str) -> str:
        body = await self.client.call("DescribeJobs", {"jobs": [job_id]})
        jobs = body.get("job_set") or []
        if not jobs:
            raise NotFoundError(f"Job {job_id} not found")
        return jobs[0].get("status", "")


class QingCloudTagAPI(TagAPI):
    """Tag association calls."""

    def __init__(self, client: QingCloudClient):
        self.client = client

    def _pairs(self, resource_type: str, resource_id: str, tag_ids: Sequence[str]):
        return [
            {"tag_id": t, "resource_type": resource_type, "resource_id": resource_id}
            for t in tag_ids
        ]

    async def attach(
        self, resource_type: str, resource_id: str, tag_ids: Sequence[str]
    ) -> None:
        await self.client.call(
            "AttachTags",
            {"resource_tag_pairs": self._pairs(resource_type, resource_id, tag_ids)},
        )

    async def detach(
        self, resource_type: str, resource_id: str, tag_ids: Sequence[str]
    ) -> None:
        await self.client.call(
            "DetachTags",
            {"resource_tag_pairs": self._pairs(resource_type, resource_id, tag_ids)},
        )
