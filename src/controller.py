"""
Load Balancer Controller - serialized, deadline-bound reconciliation workers.

Work items (ensure or delete a Service) are queued and processed by a fixed
number of workers. Items for the same Service never run concurrently; items
for different Services run in parallel. Every engine call runs under an
overall deadline, and retryable failures are requeued with exponential
backoff. The engine itself never retries.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional
from weakref import WeakValueDictionary

from config import ControllerConfig
from errors import LoadBalancerError, is_retryable
from events import EventBus, EventType, LoadBalancerEvent
from k8s import Node, Service
from loadbalancer import LoadBalancerEngine

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of reconciling one work item."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None


class WorkAction(Enum):
    ENSURE = "ensure"
    DELETE = "delete"


@dataclass
class WorkItem:
    """A request to converge or delete the load balancer of a Service."""

    action: WorkAction
    service: Service
    nodes: List[Node] = field(default_factory=list)
    skip_check: bool = False

    @property
    def key(self) -> str:
        return self.service.key


class WeakLocks:
    """
    A cache of asyncio locks that gets garbage collected once no caller
    holds a lock for a key any more.
    """

    def __init__(self):
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    def get_lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


class LoadBalancerController:
    """
    Dispatches work items to the convergence engine.

    Args:
        engine: The convergence engine
        config: Worker, deadline and backoff settings
        event_bus: Optional bus receiving one event per finished item
    """

    def __init__(
        self,
        engine: LoadBalancerEngine,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.engine = engine
        self.config = config or ControllerConfig()
        self.running = False
        self._event_bus = event_bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._locks = WeakLocks()
        self._retries: Dict[str, int] = {}
        self._workers: List[asyncio.Task] = []
        # latest queued item per key; older items are never requeued
        self._latest: Dict[str, WorkItem] = {}
        self._requeue_handles: Dict[str, asyncio.TimerHandle] = {}

    def enqueue(self, item: WorkItem) -> None:
        """Queue a work item, superseding any pending retry for its Service."""
        self._cancel_requeue(item.key)
        self._latest[item.key] = item
        self._queue.put_nowait(item)

    def backoff_delay(self, key: str) -> float:
        """
        Next requeue delay for a key: exponential, capped, with jitter.

        Each call counts as one more retry for the key.
        """
        retries = self._retries.get(key, 0)
        self._retries[key] = retries + 1
        delay = min(
            self.config.backoff_base_delay * (2 ** min(retries, 10)),
            self.config.backoff_max_delay,
        )
        jitter = (random.random() * 2 - 1) * self.config.backoff_jitter_factor
        return delay * (1 + jitter)

    async def reconcile(self, item: WorkItem) -> ReconcileResult:
        """
        Run one work item under the Service's lock and the overall deadline.
        """
        key = item.key
        lb_name = self.engine.get_load_balancer_name(item.service)

        async with self._locks.get_lock(key):
            try:
                if item.action == WorkAction.DELETE:
                    await asyncio.wait_for(
                        self.engine.delete(item.service, skip_check=item.skip_check),
                        timeout=self.config.reconcile_timeout,
                    )
                    event = LoadBalancerEvent(EventType.DELETED, key, lb_name)
                else:
                    status = await asyncio.wait_for(
                        self.engine.ensure(item.service, item.nodes),
                        timeout=self.config.reconcile_timeout,
                    )
                    for ip in status.ingress:
                        logger.info(f"[Got lb IP] service {key} got ip {ip}")
                    event = LoadBalancerEvent(
                        EventType.ENSURED, key, lb_name, ingress=list(status.ingress)
                    )
            except asyncio.TimeoutError:
                message = f"Reconciliation of {key} timed out after {self.config.reconcile_timeout}s"
                logger.error(message)
                return await self._failed(item, lb_name, message, retryable=True)
            except LoadBalancerError as e:
                logger.error(f"Failed to {item.action.value} load balancer for {key}: {e}")
                return await self._failed(item, lb_name, str(e), retryable=is_retryable(e))
            except Exception as e:
                logger.error(f"Error reconciling {key}: {e}", exc_info=True)
                return await self._failed(item, lb_name, str(e), retryable=True)

        self._retries.pop(key, None)
        if self._latest.get(key, item) is item:
            self._cancel_requeue(key)
        await self._publish(event)
        return ReconcileResult(success=True, message=f"{item.action.value} succeeded")

    async def _failed(
        self, item: WorkItem, lb_name: str, message: str, retryable: bool
    ) -> ReconcileResult:
        key = item.key
        requeue_after = None
        if self._latest.get(key, item) is not item:
            logger.info(f"Not retrying {item.action.value} of {key}: superseded")
        elif retryable:
            requeue_after = self.backoff_delay(key)
        else:
            self._retries.pop(key, None)
        await self._publish(
            LoadBalancerEvent(
                EventType.FAILED,
                key,
                lb_name,
                message=message,
                retrying=requeue_after is not None,
            )
        )
        return ReconcileResult(success=False, message=message, requeue_after=requeue_after)

    async def _publish(self, event: LoadBalancerEvent) -> None:
        if self._event_bus:
            await self._event_bus.publish(event)

    def _requeue(self, item: WorkItem, delay: float) -> None:
        key = item.key
        if self._latest.get(key) is not item:
            return
        self._cancel_requeue(key)
        loop = asyncio.get_running_loop()

        def put() -> None:
            self._requeue_handles.pop(key, None)
            if self.running and self._latest.get(key) is item:
                self._queue.put_nowait(item)

        self._requeue_handles[key] = loop.call_later(delay, put)
        logger.info(f"Requeued {key} in {delay:.1f}s")

    def _cancel_requeue(self, key: str) -> None:
        handle = self._requeue_handles.pop(key, None)
        if handle is not None:
            handle.cancel()
            logger.info(f"Cancelled pending retry of {key}")

    def pending_retries(self) -> List[str]:
        """Keys with a retry scheduled."""
        return sorted(self._requeue_handles)

    async def _worker(self) -> None:
        while self.running:
            item = await self._queue.get()
            try:
                result = await self.reconcile(item)
                if result.requeue_after is not None:
                    self._requeue(item, result.requeue_after)
                elif self._latest.get(item.key) is item:
                    del self._latest[item.key]
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        """Start the workers and run until stopped."""
        logger.info("Starting Load Balancer Controller")
        self.running = True
        self._workers = [
            asyncio.create_task(self._worker())
            for _ in range(self.config.max_concurrent_reconciles)
        ]
        await asyncio.gather(*self._workers, return_exceptions=True)

    async def stop(self) -> None:
        """Stop the workers; in-flight calls are cancelled."""
        logger.info("Stopping Load Balancer Controller")
        self.running = False
        for handle in self._requeue_handles.values():
            handle.cancel()
        self._requeue_handles.clear()

        workers, self._workers = self._workers, []
        for task in workers:
            if not task.done():
                task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
