"""
Error taxonomy for load balancer convergence.

Lower layers (cloud client, executors, resolvers) raise these typed errors;
the engine either maps NotFoundError to a non-error result (get/delete) or
lets the error bubble up unchanged to the controller, which decides whether
to requeue.
"""

import asyncio
from typing import List, Optional


class LoadBalancerError(Exception):
    """Base class for every error raised by the convergence stack."""

    retryable = False

    def __init__(self, message: str = "", code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(LoadBalancerError):
    """Desired state is malformed. Fatal, never retried."""


class NotFoundError(LoadBalancerError):
    """The target cloud resource does not exist."""


class ConflictError(LoadBalancerError):
    """A resource is held by something else (e.g. an EIP bound elsewhere)."""


class TransientCloudError(LoadBalancerError):
    """Timeouts, rate limits, busy resources. Safe to retry on the next pass."""

    retryable = True


class JobTimeoutError(TransientCloudError):
    """An asynchronous cloud job did not reach a terminal state in time."""

    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Job {job_id} did not finish within {timeout}s")
        self.job_id = job_id
        self.timeout = timeout


class JobFailedError(TransientCloudError):
    """An asynchronous cloud job finished in a failed state."""

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} finished with status '{status}'")
        self.job_id = job_id
        self.status = status


class PartialApplyError(LoadBalancerError):
    """
    Some steps of a convergence plan were applied before a later one failed.

    The next reconciliation recomputes the plan from live cloud state, so the
    completed steps are only informational.
    """

    def __init__(self, steps: List[str], cause: LoadBalancerError):
        super().__init__(
            f"Applied {len(steps)} step(s) before failing: {cause}",
            code=cause.code,
        )
        self.steps = list(steps)
        self.cause = cause
        self.retryable = cause.retryable


def is_not_found(err: BaseException) -> bool:
    """Return True if the error means the resource is absent."""
    return isinstance(err, NotFoundError)


def is_retryable(err: BaseException) -> bool:
    """Return True if reconciling again later may succeed."""
    if isinstance(err, LoadBalancerError):
        return err.retryable
    # asyncio timeouts from an overall deadline behave like transient errors
    return isinstance(err, (TimeoutError, asyncio.TimeoutError))
