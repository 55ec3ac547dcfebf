"""Runtime settings read from the environment.

Only the API key is required. Everything else keeps the defaults the
matching and pipeline tools were tuned with.
"""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

from .composites import DEFAULT_MAX_DEALS, DEFAULT_MAX_PROFILES
from .core.aggregation import STALE_AFTER_DAYS
from .core.clients.propstack import API_BASE, MAX_RETRIES
from .core.scoring import DEFAULT_TOP_N, MatchWeights


class Settings(BaseModel):
    api_key: str = Field(min_length=1)
    base_url: str = API_BASE
    timeout_seconds: float = 30.0
    max_retries: int = Field(MAX_RETRIES, ge=0)
    stale_after_days: int = Field(STALE_AFTER_DAYS, ge=0)
    match_top_n: int = Field(DEFAULT_TOP_N, gt=0)
    max_profiles: int = Field(DEFAULT_MAX_PROFILES, gt=0)
    max_deals: int = Field(DEFAULT_MAX_DEALS, gt=0)
    weights: MatchWeights = Field(default_factory=MatchWeights)

    @classmethod
    def from_env(cls) -> Settings:
        key = os.environ.get("PROPSTACK_API_KEY", "")
        if not key:
            raise ValueError("PROPSTACK_API_KEY environment variable is required. Create a key at crm.propstack.de/app/admin/api_keys")
        return cls(
            api_key=key,
            base_url=os.environ.get("PROPSTACK_BASE_URL", API_BASE),
            timeout_seconds=float(os.environ.get("PROPSTACK_TIMEOUT_SECONDS", "30")),
            max_retries=int(os.environ.get("PROPSTACK_MAX_RETRIES", str(MAX_RETRIES))),
            stale_after_days=int(os.environ.get("PROPSTACK_STALE_DAYS", str(STALE_AFTER_DAYS))),
            match_top_n=int(os.environ.get("PROPSTACK_MATCH_TOP_N", str(DEFAULT_TOP_N))),
            max_profiles=int(os.environ.get("PROPSTACK_MAX_PROFILES", str(DEFAULT_MAX_PROFILES))),
            max_deals=int(os.environ.get("PROPSTACK_MAX_DEALS", str(DEFAULT_MAX_DEALS))),
        )
