from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol


class ProviderError(Exception):
    """Transport, HTTP or parse failure talking to a provider."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ProviderRequest:
    model_id: str
    payload: Dict[str, Any]


@dataclass
class StatusSnapshot:
    status: str
    result: Any = None
    error: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderClient(Protocol):
    async def submit(self, request: ProviderRequest) -> str:
        ...

    async def status(self, request: ProviderRequest, job_id: str) -> StatusSnapshot:
        ...
