from __future__ import annotations

from decimal import Decimal
from typing import Optional


class GenerationError(Exception):
    """Base class for every failure surfaced from a generation flow.

    ``str(exc)`` is diagnostic detail for logs. ``user_message`` is the only
    text that may reach an end user.
    """

    code = 'generation_error'
    user_message = 'Generation failed. Please try again.'
    refund = True

    def __init__(self, message: str = '', *, job_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.job_id = job_id


class RateLimited(GenerationError):
    code = 'rate_limited'
    user_message = 'Too many requests. Please wait a moment and try again.'
    refund = False


class InsufficientCredits(GenerationError):
    code = 'insufficient_credits'
    user_message = 'Not enough credits for this generation.'
    refund = False

    def __init__(self, needed: Decimal, available: Decimal) -> None:
        super().__init__(f'needed {needed}, available {available}')
        self.needed = needed
        self.available = available


class SubmissionRejected(GenerationError):
    code = 'submission_rejected'
    user_message = 'The generation request was rejected. Check the parameters and try again.'

    def __init__(self, message: str = '', *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SubmissionUnavailable(GenerationError):
    code = 'submission_unavailable'
    user_message = 'The generation service is temporarily unavailable. Please try again.'

    def __init__(self, message: str = '', *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PollingExhausted(GenerationError):
    code = 'polling_exhausted'
    user_message = 'Lost contact with the generation service. Your credits were refunded.'


class ProviderFailed(GenerationError):
    code = 'provider_failed'
    user_message = 'The generation failed. Your credits were refunded.'

    def __init__(self, provider_message: str = '', *, job_id: Optional[str] = None) -> None:
        super().__init__(provider_message or 'provider reported failure', job_id=job_id)
        self.provider_message = provider_message


class NoArtifactFound(GenerationError):
    code = 'no_artifact_found'
    user_message = 'The generation finished without a usable result. Your credits were refunded.'

    def __init__(self, message: str = '', *, raw_preview: str = '', job_id: Optional[str] = None) -> None:
        super().__init__(message or 'no artifact in provider result', job_id=job_id)
        self.raw_preview = raw_preview
