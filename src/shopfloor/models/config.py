"""Configuration models for Shopfloor.

QueryConfig controls the resilient fetch policy (retries, backoff, timeout).
ListConfig adds per-entity cache and realtime settings on top of it.
DispatchConfig controls outbound webhook forwarding.
ShopfloorConfig bundles everything for one process.

All durations are seconds.
"""

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field


class QueryConfig(BaseModel):
    """Retry/timeout policy for a ResilientQuery."""

    retry_count: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    timeout: float = Field(default=10.0, gt=0)
    refetch_interval: Optional[float] = Field(default=None, gt=0)


class ListConfig(BaseModel):
    """Settings for one cached, realtime-invalidated entity list."""

    ttl: float = Field(default=30.0, gt=0)
    maxsize: Optional[int] = Field(default=None, gt=0)
    debounce: float = Field(default=0.5, ge=0)
    realtime: bool = True
    query: QueryConfig = Field(default_factory=lambda: QueryConfig(timeout=15.0))


class DispatchConfig(BaseModel):
    """Settings for the trigger_outgoing_webhook action."""

    timeout: float = Field(default=10.0, gt=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_backoff: float = Field(default=2.0, ge=0)
    user_agent: str = "Shopfloor-Webhook/1.0"
    allow_private_urls: bool = False


class ShopfloorConfig(BaseModel):
    """Per-process configuration."""

    db_path: str = ":memory:"
    db_url: Optional[str] = None
    work_orders: ListConfig = Field(default_factory=lambda: ListConfig(ttl=30.0, maxsize=10))
    reports: ListConfig = Field(default_factory=lambda: ListConfig(ttl=60.0, realtime=False))
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)

    @classmethod
    def from_env(cls, **overrides: object) -> ShopfloorConfig:
        """Build a config from ``SHOPFLOOR_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        env = os.environ
        query_kwargs: dict[str, object] = {"timeout": 15.0}
        if "SHOPFLOOR_RETRY_COUNT" in env:
            query_kwargs["retry_count"] = int(env["SHOPFLOOR_RETRY_COUNT"])
        if "SHOPFLOOR_RETRY_DELAY" in env:
            query_kwargs["retry_delay"] = float(env["SHOPFLOOR_RETRY_DELAY"])
        if "SHOPFLOOR_TIMEOUT" in env:
            query_kwargs["timeout"] = float(env["SHOPFLOOR_TIMEOUT"])

        dispatch_kwargs: dict[str, object] = {}
        if "SHOPFLOOR_OUTGOING_TIMEOUT" in env:
            dispatch_kwargs["timeout"] = float(env["SHOPFLOOR_OUTGOING_TIMEOUT"])
        if "SHOPFLOOR_ALLOW_PRIVATE_URLS" in env:
            dispatch_kwargs["allow_private_urls"] = env[
                "SHOPFLOOR_ALLOW_PRIVATE_URLS"
            ].strip().lower() in {"1", "true", "yes", "on"}

        data: dict[str, object] = {
            "db_path": env.get("SHOPFLOOR_DB", ":memory:"),
            "db_url": env.get("SHOPFLOOR_DB_URL") or None,
            "work_orders": ListConfig(
                ttl=30.0, maxsize=10, query=QueryConfig(**query_kwargs)
            ),
            "reports": ListConfig(
                ttl=60.0, realtime=False, query=QueryConfig(**query_kwargs)
            ),
            "dispatch": DispatchConfig(**dispatch_kwargs),
        }
        data.update(overrides)
        return cls(**data)
