"""
Job polling for asynchronous cloud operations.

Creating load balancers, allocating EIPs and applying changes all return a
job handle. JobWaiter polls it at a fixed interval until it reaches a
terminal state or the timeout elapses. Polling sleeps with asyncio.sleep, so
cancelling the caller aborts the wait immediately.
"""

import asyncio
import logging
from typing import Optional

from errors import JobFailedError, JobTimeoutError
from executors.base import JobAPI

logger = logging.getLogger(__name__)

JOB_SUCCESSFUL = "successful"
JOB_PENDING_STATES = ("pending", "working")


class JobWaiter:
    """Bounded, cancellable poller for cloud jobs."""

    def __init__(self, job_api: JobAPI, interval: float = 3.0, timeout: float = 300.0):
        self.job_api = job_api
        self.interval = interval
        self.timeout = timeout

    async def wait(self, job_id: Optional[str]) -> None:
        """
        Wait for a job to finish successfully.

        Args:
            job_id: The job to poll. None means the call was synchronous.

        Raises:
            JobFailedError: If the job ends in any non-successful state.
            JobTimeoutError: If the job is still running after the timeout.
        """
        if not job_id:
            return

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            status = await self.job_api.describe_job(job_id)

            if status == JOB_SUCCESSFUL:
                logger.debug(f"Job {job_id} finished successfully")
                return
            if status not in JOB_PENDING_STATES:
                raise JobFailedError(job_id, status)

            elapsed = loop.time() - start_time
            if elapsed + self.interval > self.timeout:
                raise JobTimeoutError(job_id, self.timeout)

            logger.debug(
                f"Job {job_id} status: {status}, waiting {self.interval}s..."
            )
            await asyncio.sleep(self.interval)
