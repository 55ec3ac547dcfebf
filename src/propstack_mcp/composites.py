"""Composite CRM operations built on fan-out, pagination, scoring and aggregation.

Each operation takes an explicit ``PropstackClient`` so several credentials
can live in one process. Essential calls that fail raise ``PropstackError``;
everything else is reported per section so partial data is never dressed up
as a complete result.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from .core.aggregation import (
    STALE_AFTER_DAYS,
    build_stage_lookup,
    contact_name,
    count_by,
    parse_timestamp,
    summarize_pipeline,
)
from .core.clients.propstack import PropstackClient
from .core.errors import PropstackError
from .core.fanout import fan_out
from .core.models import (
    Contact360,
    ErrorKind,
    FanOutCall,
    FanOutResult,
    Failure,
    IntakeStep,
    LeadIntake,
    LeadIntakeResult,
    MatchReport,
    Outcome,
    PipelineSummary,
    PropertyReport,
    RequestDescriptor,
    Section,
    Success,
)
from .core.scoring import DEFAULT_TOP_N, MatchWeights, rank_profiles, unwrap_number

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROFILES = 1000
DEFAULT_MAX_DEALS = 2000
DEAL_PAGE_SIZE = 100


def _compact(data: dict) -> dict:
    """Drop None values so omitted optional fields are not sent as nulls."""
    return {k: v for k, v in data.items() if v is not None}


def _require_record(outcome: Outcome, path: str) -> dict:
    if isinstance(outcome, Failure):
        raise PropstackError(outcome)
    if not isinstance(outcome.payload, dict):
        raise PropstackError(Failure(kind=ErrorKind.UNKNOWN, detail="Expected a JSON object in the response", path=path))
    return outcome.payload


def _essential_record(result: FanOutResult, path: str) -> dict:
    if result.essential_failure is not None:
        raise PropstackError(result.essential_failure)
    return _require_record(result.get(result.essential), path)


def _raise_on_failure(outcome: Outcome) -> Success:
    if isinstance(outcome, Failure):
        raise PropstackError(outcome)
    return outcome


def _sections(result: FanOutResult) -> dict[str, Section]:
    sections = {}
    for name, outcome in result.outcomes.items():
        if name == result.essential:
            continue
        if isinstance(outcome, Success):
            sections[name] = Section(name=name, ok=True, data=outcome.items, total_count=outcome.total_count)
        else:
            sections[name] = Section(name=name, ok=False, error=outcome)
    return sections


# ─── Contact 360 ──────────────────────────────────────────────────────────────


async def contact_360(client: PropstackClient, contact_id: int) -> Contact360:
    """Contact dossier: details, search profiles, deals, and the last 10 activities.

    Four calls in parallel. The contact itself is essential; the other three
    sections degrade independently.
    """
    result = await fan_out(client, [
        FanOutCall(
            name="contact",
            request=RequestDescriptor(
                path=f"/contacts/{contact_id}",
                params={"include": "children,documents,relationships,owned_properties", "expand": "true"},
            ),
            essential=True,
        ),
        FanOutCall(name="search_profiles", request=RequestDescriptor(path="/saved_queries", params={"client": contact_id})),
        FanOutCall(name="deals", request=RequestDescriptor(path="/client_properties", params={"client_id": contact_id, "include": "client,property"})),
        FanOutCall(name="activities", request=RequestDescriptor(path="/activities", params={"client_id": contact_id, "per": 10})),
    ])

    contact = _essential_record(result, f"/contacts/{contact_id}")
    sections = _sections(result)
    return Contact360(
        contact=contact,
        sections=sections,
        failed_sections=[name for name, s in sections.items() if not s.ok],
    )


# ─── Property performance ─────────────────────────────────────────────────────


async def property_report(
    client: PropstackClient,
    property_id: int,
    now: Optional[datetime] = None,
) -> PropertyReport:
    """Days on market, inquiry pipeline, and activity breakdown for one property."""
    now = now or datetime.now(timezone.utc)
    result = await fan_out(client, [
        FanOutCall(
            name="property",
            request=RequestDescriptor(path=f"/units/{property_id}", params={"new": 1, "expand": 1}),
            essential=True,
        ),
        FanOutCall(name="deals", request=RequestDescriptor(path="/client_properties", params={"property_id": property_id, "include": "client"})),
        FanOutCall(name="activities", request=RequestDescriptor(path="/activities", params={"property_id": property_id, "per": 50})),
    ])

    unit = _essential_record(result, f"/units/{property_id}")
    sections = _sections(result)

    created = parse_timestamp(unit.get("created_at"))
    days_on_market = (now - created).days if created else None

    pipeline = None
    deals_section = sections["deals"]
    if deals_section.ok:
        deals = deals_section.data
        pipeline = {
            "total_inquiries": deals_section.total_count if deals_section.total_count is not None else len(deals),
            "by_category": count_by(deals, "category"),
            "by_stage": count_by(deals, "deal_stage_id"),
            "total_value": sum(unwrap_number(d.get("sold_price")) or 0.0 for d in deals),
            "interested_contacts": [
                {
                    "deal_id": d.get("id"),
                    "contact_id": d.get("client_id"),
                    "contact_name": contact_name(d.get("client")),
                    "stage_id": d.get("deal_stage_id"),
                    "category": d.get("category"),
                }
                for d in deals[:10]
            ],
        }

    activity = None
    activities_section = sections["activities"]
    if activities_section.ok:
        activities = activities_section.data
        activity = {
            "total": activities_section.total_count if activities_section.total_count is not None else len(activities),
            "shown": len(activities),
            "by_type": count_by(activities, "type"),
            "recent": [
                {"type": a.get("type"), "title": a.get("title"), "created_at": a.get("created_at")}
                for a in activities[:5]
            ],
        }

    return PropertyReport(
        unit=unit,
        days_on_market=days_on_market,
        pipeline=pipeline,
        activity=activity,
        sections=sections,
        failed_sections=[name for name, s in sections.items() if not s.ok],
    )


# ─── Pipeline summary ─────────────────────────────────────────────────────────


async def pipeline_summary(
    client: PropstackClient,
    pipeline_id: Optional[int] = None,
    broker_id: Optional[int] = None,
    *,
    max_deals: int = DEFAULT_MAX_DEALS,
    stale_after_days: int = STALE_AFTER_DAYS,
    now: Optional[datetime] = None,
) -> PipelineSummary:
    """Deals per stage, value per stage, and stale deals.

    Pipelines (for stage names) and the paginated deal walk run in parallel.
    Pipelines are essential; a failed deal walk is terminal too, since a
    summary without deals would be empty rather than partial.
    """
    result = await fan_out(client, [
        FanOutCall(name="pipelines", request=RequestDescriptor(path="/deal_pipelines"), essential=True),
        FanOutCall(
            name="deals",
            request=RequestDescriptor(
                path="/client_properties",
                params=_compact({"include": "client,property", "deal_pipeline_id": pipeline_id, "broker_id": broker_id}),
            ),
            page_size=DEAL_PAGE_SIZE,
            max_items=max_deals,
        ),
    ])

    if result.essential_failure is not None:
        raise PropstackError(result.essential_failure)
    deals = result.get("deals")
    if isinstance(deals, Failure):
        raise PropstackError(deals)

    stage_names, pipeline_names = build_stage_lookup(result.get("pipelines").items)
    summary = summarize_pipeline(
        deals.items,
        stage_names,
        now=now,
        stale_after_days=stale_after_days,
        total_known=deals.total_count,
        truncated=deals.truncated,
    )
    summary.pipeline_id = pipeline_id
    summary.pipeline_name = pipeline_names.get(pipeline_id) if pipeline_id is not None else None
    summary.broker_id = broker_id
    return summary


# ─── Property ↔ search profile matching ──────────────────────────────────────


async def match_contacts(
    client: PropstackClient,
    property_id: int,
    *,
    max_profiles: int = DEFAULT_MAX_PROFILES,
    weights: Optional[MatchWeights] = None,
    top_n: int = DEFAULT_TOP_N,
) -> MatchReport:
    """Rank contacts' search profiles against a property.

    The property and the capped profile walk are fetched in parallel; either
    failing ends the operation, since scoring needs both.
    """
    result = await fan_out(client, [
        FanOutCall(name="property", request=RequestDescriptor(path=f"/units/{property_id}"), essential=True),
        FanOutCall(
            name="profiles",
            request=RequestDescriptor(path="/saved_queries"),
            page_size=min(100, max_profiles),
            max_items=max_profiles,
        ),
    ])

    unit = _essential_record(result, f"/units/{property_id}")
    profiles = result.get("profiles")
    if isinstance(profiles, Failure):
        raise PropstackError(profiles)

    report = rank_profiles(unit, profiles.items, weights=weights, top_n=top_n)
    report.profiles_fetched = len(profiles.items)
    report.truncated = profiles.truncated
    return report


# ─── Lead intake ──────────────────────────────────────────────────────────────


async def _first_stage(client: PropstackClient) -> tuple[Optional[dict], Optional[dict], Optional[Failure]]:
    outcome = await client.get("/deal_pipelines")
    if isinstance(outcome, Failure):
        return None, None, outcome
    pipelines = outcome.items
    if not pipelines:
        return None, None, None
    pipeline = pipelines[0]
    stages = sorted(pipeline.get("deal_stages") or [], key=lambda s: s.get("position") or 0)
    return pipeline, (stages[0] if stages else None), None


def _step(name: str, outcome: Outcome) -> IntakeStep:
    if isinstance(outcome, Failure):
        return IntakeStep(name=name, ok=False, error=outcome)
    record_id = outcome.payload.get("id") if isinstance(outcome.payload, dict) else None
    return IntakeStep(name=name, ok=True, record_id=record_id)


async def lead_intake(client: PropstackClient, lead: LeadIntake, now: Optional[datetime] = None) -> LeadIntakeResult:
    """Dedup, create or update the contact, then log note, deal and follow-up.

    The contact step is terminal on failure. Note, deal and reminder run in
    parallel afterwards and are reported individually.
    """
    now = now or datetime.now().astimezone()
    contact_id: Optional[int] = None
    action = "created"

    if lead.phone or lead.email:
        found = await client.get("/contacts", params={"phone_number": lead.phone, "email": lead.email})
        if isinstance(found, Failure):
            raise PropstackError(found)
        if found.items:
            contact_id = found.items[0].get("id")
        if contact_id is not None:
            action = "updated"

    contact_data = _compact({
        "first_name": lead.first_name,
        "last_name": lead.last_name,
        "phone": lead.phone,
        "email": lead.email,
        "client_source_id": lead.source_id,
        "broker_id": lead.broker_id,
    })
    if contact_id is not None:
        _raise_on_failure(await client.put(f"/contacts/{contact_id}", body={"client": contact_data}))
    else:
        created = _require_record(await client.post("/contacts", body={"client": contact_data}), "/contacts")
        contact_id = created.get("id")
        if contact_id is None:
            raise PropstackError(Failure(kind=ErrorKind.UNKNOWN, detail="Created contact has no id", path="/contacts"))

    full_name = f"{lead.first_name} {lead.last_name}"
    due = (now + timedelta(days=1)).replace(hour=9, minute=0, second=0, microsecond=0)
    calls: list[FanOutCall] = []
    steps: list[IntakeStep] = []

    note_body = "\n\n".join(p for p in [lead.notes, f"Interest: {lead.property_interest}" if lead.property_interest else None] if p)
    if note_body:
        calls.append(FanOutCall(name="note", request=RequestDescriptor(method="POST", path="/tasks", body={
            "task": _compact({
                "title": f"Lead intake: {full_name}",
                "body": note_body,
                "client_ids": [contact_id],
                "broker_id": lead.broker_id,
            }),
        })))

    if lead.property_id is not None:
        pipeline, stage, failure = await _first_stage(client)
        if failure is not None:
            steps.append(IntakeStep(name="deal", ok=False, error=failure))
        elif stage is None:
            steps.append(IntakeStep(name="deal", ok=False, error=Failure(
                kind=ErrorKind.UNKNOWN, detail="No deal pipeline stage configured", path="/deal_pipelines",
            )))
        else:
            calls.append(FanOutCall(name="deal", request=RequestDescriptor(method="POST", path="/client_properties", body={
                "client_property": _compact({
                    "client_id": contact_id,
                    "property_id": lead.property_id,
                    "deal_stage_id": stage["id"],
                    "deal_pipeline_id": pipeline["id"],
                    "broker_id": lead.broker_id,
                }),
            })))

    calls.append(FanOutCall(name="reminder", request=RequestDescriptor(method="POST", path="/tasks", body={
        "task": _compact({
            "title": f"Follow up: {full_name}",
            "is_reminder": True,
            "due_date": due.isoformat(),
            "remind_at": due.isoformat(),
            "done": False,
            "client_ids": [contact_id],
            "property_ids": [lead.property_id] if lead.property_id is not None else None,
            "broker_id": lead.broker_id,
        }),
    })))

    result = await fan_out(client, calls)
    steps.extend(_step(name, outcome) for name, outcome in result.outcomes.items())

    return LeadIntakeResult(
        contact_id=contact_id,
        action=action,
        steps=steps,
        reminder_due=due,
        failed_steps=[s.name for s in steps if not s.ok],
    )
