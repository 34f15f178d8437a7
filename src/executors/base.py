"""
Executor Base - Abstract interfaces for the cloud collaborators.

Executors are thin wrappers around cloud API calls. They hold no
reconciliation logic: the convergence engine decides what to call and in
which order. Mutating calls that start an asynchronous cloud job return the
job id so the caller can poll it to a terminal state.

Every executor raises the typed errors from ``errors``; a describe call for
a resource that does not exist returns None (or an empty list) rather than
raising.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from models import (
    BackendNode,
    CloudJob,
    DesiredLoadBalancer,
    ElasticIP,
    Listener,
    ObservedLoadBalancer,
    ObservedSecurityGroup,
    SecurityGroupRule,
)


class LoadBalancerExecutor(ABC):
    """
    Create, describe, update and delete load balancers and their listeners.
    """

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[ObservedLoadBalancer]:
        """
        Describe the load balancer with the given name.

        Args:
            name: The derived load balancer name

        Returns:
            The observed load balancer, or None if it does not exist.
        """
        pass

    @abstractmethod
    async def create(self, desired: DesiredLoadBalancer) -> CloudJob:
        """
        Create a bare load balancer with no listeners or backends.

        Args:
            desired: The desired load balancer (name, type and network are used)

        Returns:
            CloudJob with the new load balancer id and its creation job.
        """
        pass

    @abstractmethod
    async def resize(self, lb_id: str, lb_type: int) -> Optional[str]:
        """Change the load balancer type. Returns a job id, if any."""
        pass

    @abstractmethod
    async def delete(self, lb_id: str) -> Optional[str]:
        """
        Delete a load balancer and its listeners.

        Raises:
            NotFoundError: If the load balancer does not exist.
        """
        pass

    @abstractmethod
    async def add_listeners(
        self, lb_id: str, listeners: Sequence[Listener]
    ) -> List[str]:
        """
        Add listeners to a load balancer.

        Returns:
            The new listener ids, in the order of ``listeners``.
        """
        pass

    @abstractmethod
    async def delete_listeners(self, listener_ids: Sequence[str]) -> None:
        """Delete listeners (and the backends bound to them)."""
        pass

    @abstractmethod
    async def add_backends(
        self, listener_id: str, backends: Sequence[BackendNode], port: int
    ) -> None:
        """Bind nodes as backends of a listener on the given port."""
        pass

    @abstractmethod
    async def delete_backends(self, backend_ids: Sequence[str]) -> None:
        """Remove backends from their listeners."""
        pass

    @abstractmethod
    async def associate_eips(self, lb_id: str, eip_ids: Sequence[str]) -> Optional[str]:
        """Attach EIPs to a load balancer. Returns a job id, if any."""
        pass

    @abstractmethod
    async def dissociate_eips(
        self, lb_id: str, eip_ids: Sequence[str]
    ) -> Optional[str]:
        """Detach EIPs from a load balancer. Returns a job id, if any."""
        pass

    @abstractmethod
    async def attach_security_group(self, lb_id: str, group_id: str) -> None:
        """Set the security group of a load balancer."""
        pass

    @abstractmethod
    async def apply(self, lb_id: str) -> Optional[str]:
        """
        Push pending listener/backend changes to the running load balancer.

        Returns:
            The update job id, if any.
        """
        pass


class SecurityGroupExecutor(ABC):
    """Manage security groups and their ingress rules."""

    @abstractmethod
    async def get(self, group_id: str) -> Optional[ObservedSecurityGroup]:
        """Describe a security group by id, None if it does not exist."""
        pass

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[ObservedSecurityGroup]:
        """Describe a security group by name, None if it does not exist."""
        pass

    @abstractmethod
    async def create(self, name: str) -> str:
        """Create an empty security group. Returns its id."""
        pass

    @abstractmethod
    async def add_rules(
        self, group_id: str, rules: Sequence[SecurityGroupRule], owner: str
    ) -> None:
        """
        Add ingress rules to a group.

        Args:
            group_id: The security group id
            rules: The rules to add
            owner: Ownership marker stored as the rule name
        """
        pass

    @abstractmethod
    async def delete_rules(self, rule_ids: Sequence[str]) -> None:
        """Delete rules by id."""
        pass

    @abstractmethod
    async def apply(self, group_id: str) -> Optional[str]:
        """Apply rule changes to the resources using the group."""
        pass

    @abstractmethod
    async def delete(self, group_id: str) -> None:
        """
        Delete a security group.

        Raises:
            NotFoundError: If the group does not exist.
        """
        pass


class EIPAPI(ABC):
    """Describe, allocate and release elastic IPs."""

    @abstractmethod
    async def describe(self, eip_ids: Sequence[str]) -> List[ElasticIP]:
        """Describe EIPs by id. Missing ids are absent from the result."""
        pass

    @abstractmethod
    async def find_by_name(self, name: str) -> List[ElasticIP]:
        """Find EIPs carrying the given name."""
        pass

    @abstractmethod
    async def allocate(self, name: str, bandwidth: int, billing_mode: str) -> CloudJob:
        """
        Allocate a new EIP.

        Returns:
            CloudJob with the new EIP id and its provisioning job, if any.
        """
        pass

    @abstractmethod
    async def release(self, eip_ids: Sequence[str]) -> Optional[str]:
        """Release EIPs back to the cloud. Returns a job id, if any."""
        pass


class JobAPI(ABC):
    """Query asynchronous cloud jobs."""

    @abstractmethod
    async def describe_job(self, job_id: str) -> str:
        """
        Return the status of a job.

        Returns:
            One of 'pending', 'working', 'successful', 'failed' (or another
            cloud-specific terminal status).
        """
        pass


class TagAPI(ABC):
    """Attach and detach classification tags."""

    @abstractmethod
    async def attach(
        self, resource_type: str, resource_id: str, tag_ids: Sequence[str]
    ) -> None:
        pass

    @abstractmethod
    async def detach(
        self, resource_type: str, resource_id: str, tag_ids: Sequence[str]
    ) -> None:
        pass
