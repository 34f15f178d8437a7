"""
Security Group Synchronizer - keeps the ingress rules of a load balancer's
security group in line with the ports it exposes.

Rules are compared by identity (protocol, port, source), never by cloud
rule id, so equivalent rules created by earlier calls are recognized as
already satisfied. Only rules whose name marks them as owned by the load
balancer are ever removed; rules added by anyone else are left alone.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from executors.base import LoadBalancerExecutor, SecurityGroupExecutor
from jobs import JobWaiter
from models import (
    DesiredLoadBalancer,
    ObservedLoadBalancer,
    ObservedSecurityGroup,
    SecurityGroupRule,
)

logger = logging.getLogger(__name__)


@dataclass
class SecurityGroupSyncResult:
    """Outcome of one synchronization pass."""

    group_id: str = ""
    added: List[SecurityGroupRule] = field(default_factory=list)
    removed: List[SecurityGroupRule] = field(default_factory=list)
    created: bool = False
    attached: bool = False
    tag_ids: Tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed or self.created or self.attached)


def desired_rules(desired: DesiredLoadBalancer) -> List[SecurityGroupRule]:
    """One ingress rule per (protocol, listener port, source range)."""
    rules: Dict[Tuple[str, int, str], SecurityGroupRule] = {}
    for listener in desired.listeners:
        for source in desired.source_ranges:
            rule = SecurityGroupRule(
                protocol=listener.protocol, port=listener.port, source=source
            )
            rules.setdefault(rule.key, rule)
    return list(rules.values())


def diff_rules(
    observed: Sequence[SecurityGroupRule],
    wanted: Sequence[SecurityGroupRule],
    owner: str,
) -> Tuple[List[SecurityGroupRule], List[SecurityGroupRule]]:
    """
    Compute the rules to add and to remove.

    Args:
        observed: Rules currently in the group
        wanted: Rules that should exist
        owner: Rule name marking rules owned by this load balancer

    Returns:
        Tuple of (to_add, to_remove).
    """
    observed_keys = {r.key for r in observed}
    wanted_keys = {r.key for r in wanted}
    to_add = [r for r in wanted if r.key not in observed_keys]
    to_remove = [
        r for r in observed if r.key not in wanted_keys and r.name == owner
    ]
    return to_add, to_remove


class SecurityGroupSynchronizer:
    """Settle the ingress rules of a load balancer's own security group."""

    def __init__(
        self,
        sg_executor: SecurityGroupExecutor,
        lb_executor: LoadBalancerExecutor,
        job_waiter: JobWaiter,
    ):
        self.sg_executor = sg_executor
        self.lb_executor = lb_executor
        self.job_waiter = job_waiter

    async def _owned_group(
        self, observed: ObservedLoadBalancer, result: SecurityGroupSyncResult
    ) -> ObservedSecurityGroup:
        """Find or create the group named after the load balancer and attach it."""
        group: Optional[ObservedSecurityGroup] = None
        if observed.security_group_id:
            group = await self.sg_executor.get(observed.security_group_id)
            if group is not None and group.name != observed.name:
                group = None

        if group is None:
            group = await self.sg_executor.get_by_name(observed.name)

        if group is None:
            group_id = await self.sg_executor.create(observed.name)
            logger.info(f"Created security group {group_id} for {observed.name}")
            result.created = True
            group = ObservedSecurityGroup(group_id=group_id, name=observed.name)

        if observed.security_group_id != group.group_id:
            logger.info(
                f"Attaching security group {group.group_id} "
                f"to load balancer {observed.lb_id}"
            )
            await self.lb_executor.attach_security_group(observed.lb_id, group.group_id)
            result.attached = True

        return group

    async def sync(
        self, desired: DesiredLoadBalancer, observed: ObservedLoadBalancer
    ) -> SecurityGroupSyncResult:
        """
        Apply the rule delta to the load balancer's security group.

        Errors propagate; a partially applied delta is corrected by the next
        call because the diff is always recomputed from live rules.
        """
        result = SecurityGroupSyncResult()
        group = await self._owned_group(observed, result)
        result.group_id = group.group_id
        result.tag_ids = group.tag_ids

        to_add, to_remove = diff_rules(group.rules, desired_rules(desired), observed.name)

        if to_remove:
            logger.info(
                f"Removing {len(to_remove)} rule(s) from security group {group.group_id}"
            )
            await self.sg_executor.delete_rules([r.rule_id for r in to_remove])
            result.removed = to_remove

        if to_add:
            logger.info(
                f"Adding {len(to_add)} rule(s) to security group {group.group_id}"
            )
            await self.sg_executor.add_rules(group.group_id, to_add, observed.name)
            result.added = to_add

        if result.added or result.removed:
            job_id = await self.sg_executor.apply(group.group_id)
            await self.job_waiter.wait(job_id)

        return result

    async def delete_owned(self, lb_name: str) -> Optional[str]:
        """
        Delete the security group owned by a load balancer, if any.

        Returns:
            The deleted group id, or None if there was nothing to delete.
        """
        group = await self.sg_executor.get_by_name(lb_name)
        if group is None:
            return None
        logger.info(f"Deleting security group {group.group_id} of {lb_name}")
        await self.sg_executor.delete(group.group_id)
        return group.group_id
