"""
Load Balancer Convergence Engine.

Converges a Kubernetes Service of type LoadBalancer onto a cloud load
balancer, its EIPs, its security group and its tags. Every call builds the
desired state, reads the observed state fresh from the cloud and applies
only the difference, so calling ensure() twice with the same inputs performs
no mutation the second time.

The engine keeps no state between calls. Calls for the same Service must be
serialized by the caller; calls for different Services are independent.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from config import CloudConfig
from desired import build_desired, service_load_balancer_name
from eip import EIPPreflight, EIPResolver
from errors import LoadBalancerError, NotFoundError, PartialApplyError, TransientCloudError
from executors.base import (
    EIPAPI,
    JobAPI,
    LoadBalancerExecutor,
    SecurityGroupExecutor,
    TagAPI,
)
from jobs import JobWaiter
from k8s import Node, Service
from models import (
    ConvergencePhase,
    ConvergencePlan,
    DesiredLoadBalancer,
    LoadBalancerStatus,
    ObservedLoadBalancer,
)
from security_group import SecurityGroupSynchronizer
from tags import TagBinder

logger = logging.getLogger(__name__)

RESOURCE_LOADBALANCER = "loadbalancer"
RESOURCE_SECURITY_GROUP = "security_group"

T = TypeVar("T")

PhaseCallback = Callable[[str, ConvergencePhase], None]


def compute_plan(
    desired: DesiredLoadBalancer, observed: Optional[ObservedLoadBalancer]
) -> ConvergencePlan:
    """
    Diff listeners and backend membership.

    Listeners are matched by (protocol, port), backends by (node, port).
    Backends of a removed listener go away with it and are not listed.
    """
    plan = ConvergencePlan()
    observed_listeners = {l.key: l for l in observed.listeners} if observed else {}
    desired_keys = {l.key for l in desired.listeners}

    plan.listeners_to_remove = [
        l for key, l in observed_listeners.items() if key not in desired_keys
    ]

    for listener in desired.listeners:
        wanted = {(b.node_id, listener.node_port): b for b in desired.backends}
        current = observed_listeners.get(listener.key)

        if current is None:
            plan.listeners_to_add.append(listener)
            plan.backends_to_add.extend(
                (listener.key, b, listener.node_port) for b in wanted.values()
            )
            continue

        present = set()
        for backend in current.backends:
            key = (backend.node_id, backend.port)
            if key in wanted:
                present.add(key)
            else:
                plan.backends_to_remove.append(backend)

        plan.backends_to_add.extend(
            (listener.key, b, listener.node_port)
            for key, b in wanted.items()
            if key not in present
        )

    return plan


def project_status(observed: ObservedLoadBalancer) -> Optional[LoadBalancerStatus]:
    """Ingress addresses from confirmed cloud state; private IPs without EIPs."""
    addresses = [e.address for e in observed.eips if e.address]
    if not addresses:
        addresses = list(observed.private_ips)
    if not addresses:
        return None
    return LoadBalancerStatus(ingress=addresses)


class LoadBalancerEngine:
    """
    Drives the executors to converge one Service per call.

    Args:
        config: Immutable cloud configuration shared by all calls
        lb_executor: Load balancer and listener API
        sg_executor: Security group API
        eip_api: Elastic IP API
        job_api: Asynchronous job API
        tag_api: Tag association API
        on_phase: Optional callback invoked with (service key, phase)
    """

    def __init__(
        self,
        config: CloudConfig,
        lb_executor: LoadBalancerExecutor,
        sg_executor: SecurityGroupExecutor,
        eip_api: EIPAPI,
        job_api: JobAPI,
        tag_api: TagAPI,
        on_phase: Optional[PhaseCallback] = None,
    ):
        self.config = config
        self.lb_executor = lb_executor
        self.eip_api = eip_api
        self.job_waiter = JobWaiter(
            job_api, interval=config.job_poll_interval, timeout=config.job_timeout
        )
        self.eip_resolver = EIPResolver(
            eip_api,
            lb_executor,
            self.job_waiter,
            user_id=config.user_id,
            bandwidth=config.eip_bandwidth,
            billing_mode=config.eip_billing_mode,
        )
        self.sg_sync = SecurityGroupSynchronizer(
            sg_executor, lb_executor, self.job_waiter
        )
        self.tag_binder = TagBinder(tag_api, config.tag_ids)
        self._on_phase = on_phase

    def _enter(self, key: str, phase: ConvergencePhase) -> None:
        logger.info(f"[{key}] {phase.value}")
        if self._on_phase is not None:
            self._on_phase(key, phase)

    def get_load_balancer_name(self, service: Service) -> str:
        return service_load_balancer_name(self.config, service)

    async def _describe(self, name: str) -> Optional[ObservedLoadBalancer]:
        try:
            return await self.lb_executor.get_by_name(name)
        except NotFoundError:
            return None

    # Public operations

    async def get(self, service: Service) -> Tuple[Optional[LoadBalancerStatus], bool]:
        """
        Read-only lookup of a Service's load balancer.

        Returns:
            Tuple of (status, exists). A missing load balancer is
            (None, False), not an error.
        """
        observed = await self._describe(self.get_load_balancer_name(service))
        if observed is None:
            return None, False
        return project_status(observed), True

    async def update(self, service: Service, nodes: Optional[Sequence[Node]]) -> None:
        """Converge listeners and backends; the status is discarded."""
        await self.ensure(service, nodes)

    async def ensure(
        self, service: Service, nodes: Optional[Sequence[Node]]
    ) -> LoadBalancerStatus:
        """
        Create or converge the load balancer of a Service.

        Raises:
            ValidationError: If the Service cannot be turned into desired state.
            ConflictError: If a reused EIP is bound to another resource.
            TransientCloudError: On timeouts and busy resources (retry later).
            PartialApplyError: If a step failed after earlier steps mutated
                cloud state.
        """
        desired = build_desired(self.config, service, nodes)
        key = desired.service_key
        steps: List[str] = []

        observed = await self._describe(desired.name)
        if observed is None:
            self._enter(key, ConvergencePhase.ABSENT)
        # EIP checks happen before any mutation so a conflict changes nothing
        preflight = await self.eip_resolver.preflight(desired.eip, observed)

        try:
            if observed is None:
                self._enter(key, ConvergencePhase.CREATING)
                observed = await self._create(desired, steps)

            needs_apply = await self._converge_listeners(desired, observed, preflight, steps)
            # changes left pending by an earlier, interrupted call
            needs_apply = needs_apply or not observed.applied

            self._enter(key, ConvergencePhase.CONVERGING_SECURITY_GROUP)
            sg_result = await self.sg_sync.sync(desired, observed)
            if sg_result.changed:
                steps.append("security_group")
                needs_apply = needs_apply or sg_result.attached

            self._enter(key, ConvergencePhase.CONVERGING_TAGS)
            if self.tag_binder.enabled:
                bound = await self.tag_binder.bind(
                    RESOURCE_LOADBALANCER, observed.lb_id, observed.tag_ids
                )
                bound += await self.tag_binder.bind(
                    RESOURCE_SECURITY_GROUP, sg_result.group_id, sg_result.tag_ids
                )
                if bound:
                    steps.append("tags")

            if needs_apply:
                logger.info(f"Applying changes to load balancer {observed.lb_id}")
                await self.job_waiter.wait(await self.lb_executor.apply(observed.lb_id))
                steps.append("apply")
        except LoadBalancerError as e:
            if steps:
                logger.warning(f"[{key}] failed after steps {steps}: {e}")
                raise PartialApplyError(steps, e) from e
            raise

        # Build the status from confirmed state, not from what was sent
        confirmed = await self._describe(desired.name)
        if confirmed is None:
            raise TransientCloudError(f"Load balancer {desired.name} not visible yet")
        status = project_status(confirmed) or LoadBalancerStatus()
        self._enter(key, ConvergencePhase.READY)
        if steps:
            logger.info(f"[{key}] converged with steps {steps}")
        else:
            logger.debug(f"[{key}] already converged")
        return status

    async def delete(self, service: Service, skip_check: bool = False) -> None:
        """
        Delete a Service's load balancer and what it exclusively owns.

        Succeeds if the load balancer is already gone. With ``skip_check``
        the Service is not inspected beyond its name, cleanup of owned EIPs
        and the owned security group runs even when the load balancer is
        absent, and not-found responses from every step count as success.
        """
        name = self.get_load_balancer_name(service)
        key = service.key
        self._enter(key, ConvergencePhase.DELETING)

        observed = await self._describe(name)
        if observed is None and not skip_check:
            logger.info(f"[{key}] load balancer {name} does not exist")
            self._enter(key, ConvergencePhase.ABSENT)
            return

        if observed is not None:
            logger.info(f"Deleting load balancer {observed.lb_id} ({name})")
            job_id = await self._tolerate_not_found(self.lb_executor.delete(observed.lb_id))
            await self._tolerate_not_found(self.job_waiter.wait(job_id))

        eips = await self._tolerate_not_found(self.eip_api.find_by_name(name))
        if eips:
            await self._tolerate_not_found(self.eip_resolver.release_owned(eips, name))

        await self._tolerate_not_found(self.sg_sync.delete_owned(name))
        self._enter(key, ConvergencePhase.ABSENT)

    # Steps

    async def _create(
        self, desired: DesiredLoadBalancer, steps: List[str]
    ) -> ObservedLoadBalancer:
        logger.info(f"Creating load balancer {desired.name}")
        job = await self.lb_executor.create(desired)
        steps.append("create")
        await self.job_waiter.wait(job.job_id)

        observed = await self._describe(desired.name)
        if observed is None:
            raise TransientCloudError(
                f"Load balancer {desired.name} ({job.resource_id}) not visible yet"
            )
        return observed

    async def _converge_listeners(
        self,
        desired: DesiredLoadBalancer,
        observed: ObservedLoadBalancer,
        preflight: EIPPreflight,
        steps: List[str],
    ) -> bool:
        self._enter(desired.service_key, ConvergencePhase.CONVERGING_LISTENERS)
        changed = False

        binding = await self.eip_resolver.resolve(desired.eip, observed, preflight)
        if binding.changed:
            steps.append("eip")
            changed = True

        if observed.lb_type != desired.lb_type:
            logger.info(
                f"Resizing load balancer {observed.lb_id} "
                f"from type {observed.lb_type} to {desired.lb_type}"
            )
            await self.job_waiter.wait(
                await self.lb_executor.resize(observed.lb_id, desired.lb_type)
            )
            steps.append("resize")
            changed = True

        plan = compute_plan(desired, observed)
        if not plan.is_empty():
            await self._apply_plan(observed, plan, steps)
            changed = True
        return changed

    async def _apply_plan(
        self,
        observed: ObservedLoadBalancer,
        plan: ConvergencePlan,
        steps: List[str],
    ) -> None:
        """Apply all removals before any addition."""
        lb_id = observed.lb_id

        if plan.listeners_to_remove:
            logger.info(
                f"Removing listeners "
                f"{[f'{l.protocol}/{l.port}' for l in plan.listeners_to_remove]} "
                f"from {lb_id}"
            )
            await self.lb_executor.delete_listeners(
                [l.listener_id for l in plan.listeners_to_remove]
            )
            steps.append("remove_listeners")

        if plan.backends_to_remove:
            logger.info(f"Removing {len(plan.backends_to_remove)} backend(s) from {lb_id}")
            await self.lb_executor.delete_backends(
                [b.backend_id for b in plan.backends_to_remove]
            )
            steps.append("remove_backends")

        listener_ids: Dict[Tuple[str, int], str] = {
            l.key: l.listener_id for l in observed.listeners
        }
        if plan.listeners_to_add:
            logger.info(
                f"Adding listeners "
                f"{[f'{l.protocol}/{l.port}' for l in plan.listeners_to_add]} to {lb_id}"
            )
            new_ids = await self.lb_executor.add_listeners(lb_id, plan.listeners_to_add)
            steps.append("add_listeners")
            if len(new_ids) != len(plan.listeners_to_add):
                raise TransientCloudError(
                    f"Load balancer {lb_id} returned {len(new_ids)} listener id(s) "
                    f"for {len(plan.listeners_to_add)} new listener(s)"
                )
            listener_ids.update(
                (l.key, new_id) for l, new_id in zip(plan.listeners_to_add, new_ids)
            )

        if plan.backends_to_add:
            grouped: Dict[Tuple[Tuple[str, int], int], list] = {}
            for listener_key, backend, port in plan.backends_to_add:
                grouped.setdefault((listener_key, port), []).append(backend)
            for (listener_key, port), backends in grouped.items():
                listener_id = listener_ids[listener_key]
                logger.info(
                    f"Adding {len(backends)} backend(s) to listener {listener_id}"
                )
                await self.lb_executor.add_backends(listener_id, backends, port)
            steps.append("add_backends")

    async def _tolerate_not_found(self, awaitable: Awaitable[T]) -> Optional[T]:
        try:
            return await awaitable
        except NotFoundError as e:
            logger.info(f"Already absent: {e}")
            return None
