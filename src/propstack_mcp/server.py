"""Propstack CRM MCP Server.

FastMCP server exposing composite CRM tools (contact 360, property report,
pipeline summary, contact matching, lead intake) plus read tools for looking
up ids.
Run: propstack-mcp
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from mcp.server.fastmcp import Context, FastMCP
from mcp.types import ToolAnnotations

from . import composites
from .config import Settings
from .core.clients.propstack import PropstackClient
from .core.errors import PropstackError
from .core.models import Failure, LeadIntake, Outcome

logger = logging.getLogger(__name__)

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True, openWorldHint=True)
WRITE = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False, openWorldHint=True)


@dataclass
class AppContext:
    client: PropstackClient
    settings: Settings


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Read settings and open one Propstack client for the server's lifetime."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    settings = Settings.from_env()
    async with PropstackClient.from_settings(settings) as client:
        logger.info("Propstack client ready (%s)", settings.base_url)
        yield AppContext(client=client, settings=settings)


mcp = FastMCP(
    "Propstack CRM",
    instructions="Operate the Propstack real-estate CRM: contact dossiers, property performance, pipeline overviews, buyer matching for new listings, and post-call lead intake.",
    lifespan=lifespan,
)


def _app(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


def _failure(failure: Failure) -> dict:
    return {"ok": False, "error": failure.model_dump(mode="json"), "summary": failure.message}


def _outcome(outcome: Outcome, noun: str) -> dict:
    if isinstance(outcome, Failure):
        return _failure(outcome)
    if outcome.no_content:
        return {"ok": True, "data": None, "summary": f"No {noun} returned."}
    if isinstance(outcome.payload, list):
        shown = len(outcome.payload)
        total = outcome.total_count if outcome.total_count is not None else shown
        return {
            "ok": True,
            "data": outcome.payload,
            "total_count": outcome.total_count,
            "summary": f"Found {total} {noun} (showing {shown})." if shown else f"No {noun} found.",
        }
    return {"ok": True, "data": outcome.payload, "summary": f"Loaded {noun}."}


def _failed_note(failed: list[str]) -> str:
    if not failed:
        return ""
    return f" Some sections failed to load ({', '.join(failed)}); the rest is shown."


# ─── Read tools ───────────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def propstack_search_contacts(
    ctx: Context,
    q: Optional[str] = None,
    email: Optional[str] = None,
    phone_number: Optional[str] = None,
    broker_id: Optional[int] = None,
    page: int = 1,
    per_page: int = 25,
) -> dict:
    """Search contacts by free text, email, phone, or broker.

    Args:
        q: Free-text search over name, email, phone.
        email: Exact email address.
        phone_number: Phone number.
        broker_id: Only contacts assigned to this broker.
        page: Page number. Default 1.
        per_page: Results per page. Default 25.
    """
    outcome = await _app(ctx).client.get("/contacts", params={
        "q": q, "email": email, "phone_number": phone_number, "broker_id": broker_id,
        "page": page, "per_page": per_page, "with_meta": 1,
    })
    return _outcome(outcome, "contacts")


@mcp.tool(annotations=READ_ONLY)
async def propstack_get_contact(ctx: Context, contact_id: int) -> dict:
    """Get one contact by ID.

    Args:
        contact_id: Propstack contact ID.
    """
    return _outcome(await _app(ctx).client.get(f"/contacts/{contact_id}"), "contact")


@mcp.tool(annotations=READ_ONLY)
async def propstack_get_property(ctx: Context, property_id: int) -> dict:
    """Get one property with extra fields and custom fields.

    Args:
        property_id: Propstack property (unit) ID.
    """
    outcome = await _app(ctx).client.get(f"/units/{property_id}", params={"new": 1, "expand": 1})
    return _outcome(outcome, "property")


@mcp.tool(annotations=READ_ONLY)
async def propstack_search_deals(
    ctx: Context,
    client_id: Optional[int] = None,
    property_id: Optional[int] = None,
    deal_pipeline_id: Optional[int] = None,
    deal_stage_ids: Optional[list[int]] = None,
    broker_id: Optional[int] = None,
    page: int = 1,
    per_page: int = 25,
) -> dict:
    """Search deals (contact ↔ property links) by contact, property, pipeline, or stage.

    Args:
        client_id: Deals of this contact.
        property_id: Deals on this property.
        deal_pipeline_id: Deals in this pipeline.
        deal_stage_ids: Deals in any of these stages.
        broker_id: Deals handled by this broker.
        page: Page number. Default 1.
        per_page: Results per page. Default 25.
    """
    outcome = await _app(ctx).client.get("/client_properties", params={
        "client_id": client_id, "property_id": property_id, "deal_pipeline_id": deal_pipeline_id,
        "deal_stage_ids": deal_stage_ids, "broker_id": broker_id,
        "include": "client,property", "page": page, "per_page": per_page,
    })
    return _outcome(outcome, "deals")


@mcp.tool(annotations=READ_ONLY)
async def propstack_deal_pipelines(ctx: Context) -> dict:
    """List deal pipelines with their stages (IDs, names, positions)."""
    return _outcome(await _app(ctx).client.get("/deal_pipelines"), "pipelines")


# ─── Composite tools ──────────────────────────────────────────────────────────


@mcp.tool(annotations=READ_ONLY)
async def propstack_contact_360(ctx: Context, contact_id: int) -> dict:
    """Complete 360° view of a contact before calling them.

    Combines contact details, search profiles, deals, and the last 10
    activities in one parallel fetch. Sections that fail are flagged, the
    rest is still returned.

    Args:
        contact_id: Contact ID to build the dossier for.
    """
    try:
        report = await composites.contact_360(_app(ctx).client, contact_id)
    except PropstackError as exc:
        return _failure(exc.failure)

    counts = ", ".join(f"{s.name}: {len(s.data)}" for s in report.sections.values() if s.ok)
    return {
        "ok": True,
        **report.model_dump(mode="json"),
        "summary": f"Contact {contact_id} loaded ({counts})." + _failed_note(report.failed_sections),
    }


@mcp.tool(annotations=READ_ONLY)
async def propstack_property_report(ctx: Context, property_id: int) -> dict:
    """Performance report for a property: days on market, inquiries, pipeline, activity.

    Args:
        property_id: Property ID to report on.
    """
    try:
        report = await composites.property_report(_app(ctx).client, property_id)
    except PropstackError as exc:
        return _failure(exc.failure)

    parts = []
    if report.days_on_market is not None:
        parts.append(f"{report.days_on_market} days on market")
    if report.pipeline is not None:
        parts.append(f"{report.pipeline['total_inquiries']} inquiries")
    if report.activity is not None:
        parts.append(f"{report.activity['total']} activities")
    return {
        "ok": True,
        **report.model_dump(mode="json"),
        "summary": f"Property {property_id}: " + (", ".join(parts) or "no data") + "." + _failed_note(report.failed_sections),
    }


@mcp.tool(annotations=READ_ONLY)
async def propstack_pipeline_summary(
    ctx: Context,
    pipeline_id: Optional[int] = None,
    broker_id: Optional[int] = None,
) -> dict:
    """Pipeline overview: deals and value per stage, plus stale deals needing attention.

    Args:
        pipeline_id: Only deals in this pipeline.
        broker_id: Only deals handled by this broker.
    """
    app = _app(ctx)
    try:
        summary = await composites.pipeline_summary(
            app.client,
            pipeline_id,
            broker_id,
            max_deals=app.settings.max_deals,
            stale_after_days=app.settings.stale_after_days,
        )
    except PropstackError as exc:
        return _failure(exc.failure)

    text = (
        f"{summary.aggregated_count} deals across {len(summary.buckets)} stages, "
        f"total value {summary.total_value:,.0f}. "
        f"{len(summary.stale_deals)} stale (no update in {summary.stale_after_days}+ days)."
    )
    if summary.warnings:
        text += " " + " ".join(summary.warnings)
    return {"ok": True, "partial": summary.is_partial, **summary.model_dump(mode="json"), "summary": text}


@mcp.tool(annotations=READ_ONLY)
async def propstack_match_contacts(ctx: Context, property_id: int, max_profiles: Optional[int] = None) -> dict:
    """Find contacts whose search profiles match a property, ranked by match score.

    Scores marketing type, city, price, rent, rooms, living space and property
    type. Returns the top matches with what matched and what did not.

    Args:
        property_id: Property to find buyers or renters for.
        max_profiles: Max search profiles to fetch and score. Default 1000.
    """
    app = _app(ctx)
    try:
        report = await composites.match_contacts(
            app.client,
            property_id,
            max_profiles=max_profiles or app.settings.max_profiles,
            weights=app.settings.weights,
            top_n=app.settings.match_top_n,
        )
    except PropstackError as exc:
        return _failure(exc.failure)

    text = (
        f"Found {report.total_matches} matching profiles out of {report.profiles_considered} "
        f"(showing top {len(report.matches)})."
    )
    if report.truncated:
        text += f" Only the first {report.profiles_fetched} search profiles were checked."
    matches = [{**m.model_dump(mode="json"), "percent": m.percent} for m in report.matches]
    return {"ok": True, **report.model_dump(mode="json"), "matches": matches, "summary": text}


@mcp.tool(annotations=WRITE)
async def propstack_lead_intake(
    ctx: Context,
    first_name: str,
    last_name: str,
    phone: Optional[str] = None,
    email: Optional[str] = None,
    source_id: Optional[int] = None,
    broker_id: Optional[int] = None,
    notes: Optional[str] = None,
    property_interest: Optional[str] = None,
    property_id: Optional[int] = None,
) -> dict:
    """Post-call lead intake: dedup, create or update contact, log notes, open a deal, set a follow-up.

    Args:
        first_name: Contact first name.
        last_name: Contact last name.
        phone: Phone number, also used for dedup.
        email: Email address, also used for dedup.
        source_id: Lead source ID.
        broker_id: Assigned broker ID.
        notes: Call notes.
        property_interest: Free text about what the lead is looking for.
        property_id: Property the lead asked about; opens a deal at the first stage.
    """
    lead = LeadIntake(
        first_name=first_name, last_name=last_name, phone=phone, email=email, source_id=source_id,
        broker_id=broker_id, notes=notes, property_interest=property_interest, property_id=property_id,
    )
    try:
        result = await composites.lead_intake(_app(ctx).client, lead)
    except PropstackError as exc:
        return _failure(exc.failure)

    done = ", ".join(s.name for s in result.steps if s.ok) or "nothing else"
    text = f"Contact {result.contact_id} {result.action}; done: {done}."
    if result.failed_steps:
        text += f" Failed: {', '.join(result.failed_steps)}."
    return {"ok": True, **result.model_dump(mode="json"), "summary": text}


def main():
    """Entry point for the CLI command."""
    mcp.run()


if __name__ == "__main__":
    main()
