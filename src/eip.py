"""
EIP Resolver - settles the external address of a load balancer.

Two strategies are supported:

- reuse: bind existing EIPs given by id. IDs must belong to the configured
  account and must not be bound to another resource.
- allocate: request a new EIP named after the load balancer. The name marks
  the address as owned by this load balancer, so it can be adopted after a
  failed call and released when the load balancer is deleted.

Reused addresses are never released; their ownership is external.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from errors import ConflictError, NotFoundError, ValidationError
from executors.base import EIPAPI, LoadBalancerExecutor
from jobs import JobWaiter
from models import EIPBinding, EIPSpec, EIPStrategy, ElasticIP, ObservedLoadBalancer

logger = logging.getLogger(__name__)


@dataclass
class EIPPreflight:
    """Read-only result of checking a reuse strategy."""

    eips: List[ElasticIP] = field(default_factory=list)


class EIPResolver:
    """Resolve an EIP strategy into concrete addresses bound to a load balancer."""

    def __init__(
        self,
        eip_api: EIPAPI,
        lb_executor: LoadBalancerExecutor,
        job_waiter: JobWaiter,
        user_id: str = "",
        bandwidth: int = 4,
        billing_mode: str = "traffic",
    ):
        self.eip_api = eip_api
        self.lb_executor = lb_executor
        self.job_waiter = job_waiter
        self.user_id = user_id
        self.bandwidth = bandwidth
        self.billing_mode = billing_mode

    async def preflight(
        self, spec: EIPSpec, observed: Optional[ObservedLoadBalancer]
    ) -> EIPPreflight:
        """
        Check a strategy without mutating anything.

        For reuse, every id must exist, belong to the account and be either
        unbound or bound to ``observed``.

        Raises:
            NotFoundError: If a reuse id does not exist.
            ValidationError: If a reuse id belongs to another account.
            ConflictError: If a reuse id is bound to a different resource.
        """
        if spec.strategy != EIPStrategy.REUSE:
            return EIPPreflight()

        eips = await self.eip_api.describe(spec.ids)
        by_id = {e.eip_id: e for e in eips}
        lb_id = observed.lb_id if observed else ""

        for eip_id in spec.ids:
            eip = by_id.get(eip_id)
            if eip is None:
                raise NotFoundError(f"EIP {eip_id} not found")
            if self.user_id and eip.owner and eip.owner != self.user_id:
                raise ValidationError(
                    f"EIP {eip_id} does not belong to account {self.user_id}"
                )
            if eip.resource_id and eip.resource_id != lb_id:
                raise ConflictError(
                    f"EIP {eip_id} is already bound to {eip.resource_id}"
                )

        return EIPPreflight(eips=[by_id[i] for i in spec.ids])

    async def resolve(
        self,
        spec: EIPSpec,
        observed: ObservedLoadBalancer,
        preflight: Optional[EIPPreflight] = None,
    ) -> EIPBinding:
        """
        Bind the addresses required by ``spec`` to ``observed``.

        Re-running the same strategy against an already bound load balancer
        is a no-op.

        Args:
            spec: The EIP strategy
            observed: The load balancer to bind to (must exist)
            preflight: Result of :meth:`preflight`, re-checked if omitted

        Returns:
            EIPBinding describing the bound addresses and what changed.
        """
        if spec.strategy == EIPStrategy.REUSE:
            if preflight is None:
                preflight = await self.preflight(spec, observed)
            return await self._resolve_reuse(spec, observed, preflight)
        return await self._resolve_allocate(observed)

    async def _resolve_reuse(
        self,
        spec: EIPSpec,
        observed: ObservedLoadBalancer,
        preflight: EIPPreflight,
    ) -> EIPBinding:
        binding = EIPBinding(strategy=EIPStrategy.REUSE, eip_ids=list(spec.ids))
        bound = set(observed.eip_ids)

        binding.attached = [e.eip_id for e in preflight.eips if e.eip_id not in bound]
        binding.detached = [i for i in observed.eip_ids if i not in spec.ids]

        if binding.detached:
            logger.info(
                f"Detaching EIPs {binding.detached} from load balancer {observed.lb_id}"
            )
            job_id = await self.lb_executor.dissociate_eips(
                observed.lb_id, binding.detached
            )
            await self.job_waiter.wait(job_id)
            # addresses allocated earlier for this load balancer are ours to release
            await self.release_owned(
                [e for e in observed.eips if e.eip_id in binding.detached],
                observed.name,
            )

        if binding.attached:
            logger.info(
                f"Attaching EIPs {binding.attached} to load balancer {observed.lb_id}"
            )
            job_id = await self.lb_executor.associate_eips(
                observed.lb_id, binding.attached
            )
            await self.job_waiter.wait(job_id)

        return binding

    async def _resolve_allocate(self, observed: ObservedLoadBalancer) -> EIPBinding:
        binding = EIPBinding(strategy=EIPStrategy.ALLOCATE)

        if observed.eips:
            binding.eip_ids = list(observed.eip_ids)
            return binding

        # adopt an address left unattached by an earlier, interrupted call
        candidates = [
            e for e in await self.eip_api.find_by_name(observed.name) if not e.resource_id
        ]
        if candidates:
            eip_id = candidates[0].eip_id
            logger.info(f"Adopting unattached EIP {eip_id} for {observed.name}")
        else:
            job = await self.eip_api.allocate(
                observed.name, self.bandwidth, self.billing_mode
            )
            await self.job_waiter.wait(job.job_id)
            eip_id = job.resource_id
            binding.allocated.append(eip_id)
            logger.info(f"Allocated EIP {eip_id} for {observed.name}")

        job_id = await self.lb_executor.associate_eips(observed.lb_id, [eip_id])
        await self.job_waiter.wait(job_id)
        binding.attached.append(eip_id)
        binding.eip_ids = [eip_id]
        return binding

    async def release_owned(self, eips: Sequence[ElasticIP], lb_name: str) -> List[str]:
        """
        Release the EIPs that were allocated for ``lb_name``.

        Args:
            eips: Candidate addresses
            lb_name: The load balancer name used when allocating

        Returns:
            The released EIP ids.
        """
        owned = [e.eip_id for e in eips if e.name == lb_name]
        if not owned:
            return []
        logger.info(f"Releasing EIPs {owned} allocated for {lb_name}")
        job_id = await self.eip_api.release(owned)
        await self.job_waiter.wait(job_id)
        return owned
