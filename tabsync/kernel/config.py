"""
tabsync configuration — every tunable of the sync engine in one place.

Defaults suit a browser-like session. from_env() reads TABSYNC_* variables
so hosts can override them without code changes.
"""

from __future__ import annotations

import os
from collections.abc import Mapping

from pydantic import BaseModel, Field

_ENV_FIELDS: dict[str, str] = {
    "TABSYNC_OFFLINE_MODE": "enable_offline_mode",
    "TABSYNC_SYNC_INTERVAL_MS": "sync_interval_ms",
    "TABSYNC_MAX_RETRIES": "max_retries",
    "TABSYNC_RETRY_DELAY_MS": "retry_delay_ms",
    "TABSYNC_CACHE_TTL_MS": "cache_ttl_ms",
    "TABSYNC_CACHE_MAX_SIZE": "cache_max_size",
    "TABSYNC_HISTORY_SIZE": "history_size",
}


class SyncConfig(BaseModel):
    """Sync engine settings."""

    model_config = {"extra": "forbid", "frozen": True}

    enable_offline_mode: bool = True
    sync_interval_ms: int = Field(default=30_000, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=5_000, ge=0)  # base of the exponential backoff
    cache_ttl_ms: int = Field(default=300_000, ge=0)
    cache_max_size: int = Field(default=100, ge=1)
    history_size: int = Field(default=100, ge=1)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SyncConfig:
        env = os.environ if environ is None else environ
        values = {field: env[name] for name, field in _ENV_FIELDS.items() if env.get(name, "") != ""}
        return cls.model_validate(values)
