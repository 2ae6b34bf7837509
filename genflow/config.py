from __future__ import annotations

import json
from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8')

    # Provider (fal-style queue API)
    fal_api_key: str = Field('', alias='FAL_API_KEY')
    fal_base_url: str = Field('https://queue.fal.run', alias='FAL_BASE_URL')
    provider_timeout_seconds: float = Field(30.0, alias='PROVIDER_TIMEOUT_SECONDS')

    # Database. Empty keeps the ledger in memory.
    database_url: str = Field('', alias='DATABASE_URL')

    # Credits
    signup_bonus_credits: str = Field('0', alias='SIGNUP_BONUS_CREDITS')

    # Polling
    poll_initial_delay_seconds: float = Field(10.0, alias='POLL_INITIAL_DELAY_SECONDS')
    poll_interval_seconds: float = Field(4.0, alias='POLL_INTERVAL_SECONDS')
    poll_queued_interval_seconds: float = Field(5.0, alias='POLL_QUEUED_INTERVAL_SECONDS')
    poll_backoff_multiplier: float = Field(1.5, alias='POLL_BACKOFF_MULTIPLIER')
    poll_backoff_cap_seconds: float = Field(30.0, alias='POLL_BACKOFF_CAP_SECONDS')
    poll_jitter_seconds: float = Field(2.0, alias='POLL_JITTER_SECONDS')
    poll_max_transport_errors: int = Field(5, alias='POLL_MAX_TRANSPORT_ERRORS')
    poll_artifact_grace_seconds: float = Field(2.5, alias='POLL_ARTIFACT_GRACE_SECONDS')
    poll_artifact_grace_retries: int = Field(5, alias='POLL_ARTIFACT_GRACE_RETRIES')
    poll_max_wait_seconds: int = Field(600, alias='POLL_MAX_WAIT_SECONDS')
    reconcile_interval_seconds: int = Field(60, alias='RECONCILE_INTERVAL_SECONDS')
    # Claims on persisted jobs outlive the longest poll budget. Empty worker id uses the hostname.
    worker_id: str = Field('', alias='WORKER_ID')
    job_claim_stale_seconds: int = Field(1200, alias='JOB_CLAIM_STALE_SECONDS')

    # Rate limiting
    rate_limit_window_seconds: float = Field(60.0, alias='RATE_LIMIT_WINDOW_SECONDS')
    rate_limit_max_requests: int = Field(100, alias='RATE_LIMIT_MAX_REQUESTS')

    # Discounts
    discount_cache_ttl_seconds: float = Field(300.0, alias='DISCOUNT_CACHE_TTL_SECONDS')
    discount_error_ttl_seconds: float = Field(30.0, alias='DISCOUNT_ERROR_TTL_SECONDS')
    discount_cache_max_entries: int = Field(10000, alias='DISCOUNT_CACHE_MAX_ENTRIES')
    discount_lookup_retries: int = Field(3, alias='DISCOUNT_LOOKUP_RETRIES')
    discount_retry_delay_seconds: float = Field(1.0, alias='DISCOUNT_RETRY_DELAY_SECONDS')
    discount_rules: str = Field('', alias='DISCOUNT_RULES')

    # Diagnostics
    payload_preview_chars: int = Field(500, alias='PAYLOAD_PREVIEW_CHARS')

    # API
    api_host: str = Field('127.0.0.1', alias='API_HOST')
    api_port: int = Field(9020, alias='API_PORT')

    # Logging
    log_level: str = Field('INFO', alias='LOG_LEVEL')

    def discount_rule_dicts(self) -> List[Dict[str, Any]]:
        if not self.discount_rules.strip():
            return []
        raw = json.loads(self.discount_rules)
        if not isinstance(raw, list):
            raise ValueError('DISCOUNT_RULES must be a JSON list')
        return [item for item in raw if isinstance(item, dict)]


@lru_cache
def get_settings() -> Settings:
    return Settings()
