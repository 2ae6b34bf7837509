from __future__ import annotations

import asyncio

from genflow.errors import SubmissionRejected, SubmissionUnavailable
from genflow.services.provider import ProviderClient, ProviderError, ProviderRequest
from genflow.utils.logging import get_logger


logger = get_logger('submitter')

RETRYABLE_CLIENT_STATUSES = {408, 429}


def is_rejection(status_code: int | None) -> bool:
    if status_code is None:
        return False
    return 400 <= status_code < 500 and status_code not in RETRYABLE_CLIENT_STATUSES


class JobSubmitter:
    """Creates provider jobs and classifies submission failures.

    Nothing is retried here; a retryable failure is reported as
    ``SubmissionUnavailable`` and the caller decides.
    """

    def __init__(self, provider: ProviderClient, timeout_seconds: float = 30.0) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def submit(self, request: ProviderRequest) -> str:
        try:
            job_id = await asyncio.wait_for(self.provider.submit(request), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            logger.warning('submit_timeout', model_id=request.model_id, timeout=self.timeout_seconds)
            raise SubmissionUnavailable('submission timed out') from exc
        except ProviderError as exc:
            if is_rejection(exc.status_code):
                logger.warning('submit_rejected', model_id=request.model_id, status_code=exc.status_code, error=str(exc))
                raise SubmissionRejected(str(exc), status_code=exc.status_code) from exc
            logger.warning('submit_unavailable', model_id=request.model_id, status_code=exc.status_code, error=str(exc))
            raise SubmissionUnavailable(str(exc), status_code=exc.status_code) from exc

        job_id = str(job_id or '').strip()
        if not job_id:
            # The provider may or may not have queued something; no job is assumed.
            logger.error('submit_missing_job_id', model_id=request.model_id)
            raise SubmissionUnavailable('provider response carried no job id')
        logger.info('job_submitted', model_id=request.model_id, job_id=job_id)
        return job_id
