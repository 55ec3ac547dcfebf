"""Pydantic data models: the shared business objects.

Request descriptors, classified outcomes, and the derived results (match
scores, pipeline buckets) the tools hand back. CRM records themselves stay
plain dicts; the upstream API owns their shape.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Classified failure kinds for an upstream call."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    RATE_LIMITED = "rate_limited"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNKNOWN = "unknown"


TRANSIENT_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.NETWORK_UNREACHABLE})


class RequestDescriptor(BaseModel):
    """A single upstream call. Built fresh for every invocation."""

    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    path: str
    params: dict[str, Any] = Field(default_factory=dict)
    body: Optional[Any] = None

    def with_params(self, **params: Any) -> RequestDescriptor:
        return self.model_copy(update={"params": {**self.params, **params}})


class Success(BaseModel):
    """A 2xx response, normalized to one shape regardless of upstream variance."""

    ok: Literal[True] = True
    payload: Any = None
    total_count: Optional[int] = Field(None, description="Upstream total-item hint from pagination metadata")
    no_content: bool = Field(False, description="204 or empty body; distinct from a JSON null payload")
    truncated: bool = False

    @property
    def items(self) -> list:
        if isinstance(self.payload, list):
            return self.payload
        return []


class Failure(BaseModel):
    """A classified failure with enough context to explain it."""

    ok: Literal[False] = False
    kind: ErrorKind
    status: Optional[int] = None
    detail: str = ""
    path: str = ""
    resource_id: Optional[str] = None
    field_errors: dict[str, list[str]] = Field(default_factory=dict)
    retry_after: Optional[float] = None
    attempts: int = 1

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def message(self) -> str:
        if self.kind is ErrorKind.UNAUTHORIZED:
            return "Invalid API key. Check your PROPSTACK_API_KEY. Manage keys at crm.propstack.de/app/admin/api_keys"
        if self.kind is ErrorKind.FORBIDDEN:
            return "Insufficient permissions. Check API key permissions in Propstack admin."
        if self.kind is ErrorKind.NOT_FOUND:
            if self.resource_id:
                return f"Not found. The resource with ID {self.resource_id} does not exist ({self.path})."
            return f"Not found ({self.path})."
        if self.kind is ErrorKind.VALIDATION:
            if self.field_errors:
                lines = [f"  {field}: {', '.join(msgs)}" for field, msgs in self.field_errors.items()]
                return "Validation failed:\n" + "\n".join(lines)
            return f"Validation error: {self.detail}"
        if self.kind is ErrorKind.RATE_LIMITED:
            return f"Rate limited by Propstack API after {self.attempts} attempt(s). Please try again in a moment."
        if self.kind is ErrorKind.NETWORK_UNREACHABLE:
            return f"Network error: could not reach Propstack API after {self.attempts} attempt(s). ({self.detail})"
        return f"Propstack API error {self.status}: {self.detail}"


Outcome = Union[Success, Failure]


class PaginatedCollection(BaseModel):
    """Items accumulated across pages, never more than ``max_items``."""

    items: list[Any] = Field(default_factory=list)
    total_count: Optional[int] = None
    max_items: int
    pages_fetched: int = 0
    truncated: bool = False


class FanOutCall(BaseModel):
    """One named member of a fan-out. ``page_size`` switches it to a pagination walk."""

    model_config = ConfigDict(frozen=True)

    name: str
    request: RequestDescriptor
    essential: bool = False
    page_size: Optional[int] = None
    max_items: int = 1000


class FanOutResult(BaseModel):
    """Exactly one outcome per requested call name."""

    outcomes: dict[str, Outcome]
    essential: Optional[str] = None

    def get(self, name: str) -> Outcome:
        return self.outcomes[name]

    @property
    def failed(self) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if not outcome.ok]

    @property
    def essential_failure(self) -> Optional[Failure]:
        if self.essential is None:
            return None
        outcome = self.outcomes[self.essential]
        return outcome if isinstance(outcome, Failure) else None


# ─── Scoring ──────────────────────────────────────────────────────────────────


class MatchResult(BaseModel):
    """How well one search profile fits a property."""

    profile_id: Optional[int] = None
    contact_id: Optional[int] = None
    score: int = Field(ge=0)
    max_score: int = Field(ge=0)
    matched: list[str] = Field(default_factory=list)
    mismatched: list[str] = Field(default_factory=list)

    @property
    def percent(self) -> int:
        if self.max_score <= 0:
            return 0
        return round(self.score / self.max_score * 100)


class MatchReport(BaseModel):
    """Ranked, capped match results plus the uncapped count."""

    property_id: Optional[int] = None
    matches: list[MatchResult]
    total_matches: int = Field(description="Non-zero-scoring profiles before the top-N cap")
    profiles_considered: int
    profiles_fetched: int = 0
    truncated: bool = Field(False, description="Profile fetch was cut short by the max_profiles cap")


# ─── Aggregation ──────────────────────────────────────────────────────────────


class StageBucket(BaseModel):
    """Deals grouped under one stage (or the unassigned bucket)."""

    key: str
    stage_id: Optional[int] = None
    count: int = 0
    value: float = 0.0
    deal_ids: list[Any] = Field(default_factory=list)
    records: list[dict] = Field(default_factory=list, exclude=True)


class StaleDeal(BaseModel):
    deal_id: Any = None
    contact_id: Optional[int] = None
    contact_name: Optional[str] = None
    property_id: Optional[int] = None
    property_title: Optional[str] = None
    stage: str
    last_update: datetime
    days_since_update: int


class PipelineSummary(BaseModel):
    """Per-stage counts and values plus the deals needing attention."""

    pipeline_id: Optional[int] = None
    pipeline_name: Optional[str] = None
    broker_id: Optional[int] = None
    buckets: list[StageBucket]
    total_value: float
    aggregated_count: int = Field(description="Deals actually aggregated")
    total_known: Optional[int] = Field(None, description="Deals the upstream reports as existing")
    stale_after_days: int
    stale_deals: list[StaleDeal] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.total_known is not None and self.total_known != self.aggregated_count


# ─── Composite reports ────────────────────────────────────────────────────────


class Section(BaseModel):
    """One non-essential part of a composite report."""

    name: str
    ok: bool
    data: Any = None
    total_count: Optional[int] = None
    error: Optional[Failure] = None


class Contact360(BaseModel):
    contact: dict
    sections: dict[str, Section]
    failed_sections: list[str] = Field(default_factory=list)


class PropertyReport(BaseModel):
    unit: dict
    days_on_market: Optional[int] = None
    pipeline: Optional[dict] = None
    activity: Optional[dict] = None
    sections: dict[str, Section]
    failed_sections: list[str] = Field(default_factory=list)


class LeadIntake(BaseModel):
    """Post-call lead data as captured by a voice or chat agent."""

    first_name: str
    last_name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    source_id: Optional[int] = None
    broker_id: Optional[int] = None
    notes: Optional[str] = None
    property_interest: Optional[str] = None
    property_id: Optional[int] = None


class IntakeStep(BaseModel):
    name: str
    ok: bool
    record_id: Optional[int] = None
    error: Optional[Failure] = None


class LeadIntakeResult(BaseModel):
    contact_id: int
    action: Literal["created", "updated"]
    steps: list[IntakeStep] = Field(default_factory=list)
    reminder_due: datetime
    failed_steps: list[str] = Field(default_factory=list)
