"""
Relayer job status polling.

A relayed withdrawal is a job on the relayer: it moves through queued,
accepted, sent and mined states until it ends confirmed or failed. The poller
requests the job on a fixed interval and stops on a terminal status, on an
optional timeout, or when its task is cancelled.
"""

import asyncio
import logging

import httpx

from .exceptions import RelayerJobError
from .models import JobStatus, WithdrawalJob

logger = logging.getLogger(__name__)


class JobPoller:
    """Polls ``GET /v1/jobs/{id}`` until the job reaches a terminal status."""

    def __init__(self, client: httpx.AsyncClient, interval: float = 3.0):
        self.client = client
        self.interval = interval

    async def fetch(self, relayer_url: str, job_id: str) -> WithdrawalJob:
        response = await self.client.get(f"{relayer_url}/v1/jobs/{job_id}")
        response.raise_for_status()
        return WithdrawalJob.from_response(job_id, response.json())

    async def _poll(self, relayer_url: str, job_id: str) -> WithdrawalJob:
        while True:
            try:
                job = await self.fetch(relayer_url, job_id)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Failed to fetch status of job {job_id}: {e}")
            else:
                logger.info(f"Current job status {job.status.value}, confirmations: {job.confirmations}")
                if job.status.is_terminal:
                    if job.status is JobStatus.FAILED:
                        raise RelayerJobError(job_id, job.failed_reason)
                    return job

            await asyncio.sleep(self.interval)

    async def wait_for_completion(
        self,
        relayer_url: str,
        job_id: str,
        timeout: float | None = None,
    ) -> WithdrawalJob:
        """
        Poll a job until it is confirmed.

        Args:
            relayer_url: Base URL of the relayer
            job_id: Job id returned when the withdrawal was submitted
            timeout: Seconds to wait before giving up; unbounded when None

        Returns:
            The confirmed job

        Raises:
            RelayerJobError: If the relayer reports the job as failed
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        if timeout is None:
            return await self._poll(relayer_url, job_id)
        return await asyncio.wait_for(self._poll(relayer_url, job_id), timeout)

    def start(self, relayer_url: str, job_id: str, timeout: float | None = None) -> "asyncio.Task[WithdrawalJob]":
        """Schedule polling as a task the caller can cancel."""
        return asyncio.create_task(
            self.wait_for_completion(relayer_url, job_id, timeout),
            name=f"relayer-job-{job_id}",
        )
