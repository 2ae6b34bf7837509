from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from genflow.config import Settings, get_settings
from genflow.services.decoder import parse_json_body
from genflow.services.jobs import SUCCESS_STATUSES
from genflow.services.provider import ProviderError, ProviderRequest, StatusSnapshot
from genflow.utils.logging import get_logger
from genflow.utils.text import clamp_text


logger = get_logger('fal')


class FalError(ProviderError):
    pass


class FalClient:
    """Client for a fal-style queue API.

    ``POST {base}/{model}`` enqueues, ``GET {base}/{app}/requests/{id}/status``
    reports progress and ``GET {base}/{app}/requests/{id}`` returns the result
    once the status is terminal.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = 'https://queue.fal.run',
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> 'FalClient':
        settings = settings or get_settings()
        return cls(
            api_key=settings.fal_api_key,
            base_url=settings.fal_base_url,
            timeout=settings.provider_timeout_seconds,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Key {self.api_key}',
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }

    @staticmethod
    def app_path(model_id: str) -> str:
        # Status and result routes are addressed by owner/app, without the sub-path.
        parts = [part for part in model_id.strip('/').split('/') if part]
        return '/'.join(parts[:2])

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as exc:
            raise FalError(f'fal timeout on {method} {url}') from exc
        except httpx.HTTPError as exc:
            raise FalError(f'fal transport error on {method} {url}: {exc}') from exc
        if resp.status_code >= 400:
            raise FalError(f'fal error {resp.status_code}: {clamp_text(resp.text, 300)}', resp.status_code)
        try:
            return parse_json_body(resp.text)
        except ValueError as exc:
            logger.warning(
                'non_json_response',
                url=url,
                status_code=resp.status_code,
                preview=clamp_text(resp.text, 200),
            )
            raise FalError(f'fal returned unparsable body: {exc}', resp.status_code) from exc

    async def submit(self, request: ProviderRequest) -> str:
        url = f'{self.base_url}/{request.model_id.strip("/")}'
        record = await self._request('POST', url, json=request.payload)
        return self.extract_request_id(record)

    async def status(self, request: ProviderRequest, job_id: str) -> StatusSnapshot:
        base = f'{self.base_url}/{self.app_path(request.model_id)}/requests/{job_id}'
        record = await self._request('GET', f'{base}/status')
        if not isinstance(record, dict):
            raise FalError('fal status response is not an object')
        status = self.get_status(record)
        error = self.get_error(record)
        if status.lower() not in SUCCESS_STATUSES:
            return StatusSnapshot(status=status, error=error, raw=record)
        if error:
            # Completed with an error attached is a failed job.
            return StatusSnapshot(status='failed', error=error, raw=record)
        try:
            result = await self._request('GET', base)
        except FalError as exc:
            if exc.status_code is not None and 400 <= exc.status_code < 500 and exc.status_code not in (408, 429):
                return StatusSnapshot(status='failed', error=str(exc), raw=record)
            raise
        return StatusSnapshot(status=status, result=result, raw=record)

    @staticmethod
    def extract_request_id(record: Any) -> str:
        if not isinstance(record, dict):
            return ''
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        candidates = [
            record.get('request_id'),
            record.get('requestId'),
            data.get('request_id'),
            data.get('requestId'),
        ]
        for candidate in candidates:
            value = str(candidate or '').strip()
            if value:
                return value
        return ''

    @staticmethod
    def get_status(record: Dict[str, Any]) -> str:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        return str(
            record.get('status')
            or record.get('state')
            or data.get('status')
            or data.get('state')
            or ''
        ).strip()

    @staticmethod
    def get_error(record: Dict[str, Any]) -> Optional[str]:
        data = record.get('data') if isinstance(record.get('data'), dict) else {}
        error = record.get('error') or data.get('error') or record.get('detail')
        if not error:
            return None
        if isinstance(error, dict):
            error = error.get('message') or error
        return clamp_text(str(error), 500)
