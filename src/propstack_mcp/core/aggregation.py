"""Pipeline aggregation over deal records.

Buckets deals by stage, sums their values, and flags stale deals. Propstack
only returns raw deal rows; counts per stage, pipeline value, and "what has
gone quiet" are computed here.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from .models import PipelineSummary, StageBucket, StaleDeal
from .scoring import unwrap_number

logger = logging.getLogger(__name__)

STALE_AFTER_DAYS = 14
UNASSIGNED_BUCKET = "Unassigned"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp from the API. Naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def contact_name(contact: Optional[dict]) -> Optional[str]:
    if not contact:
        return None
    if contact.get("name"):
        return str(contact["name"])
    parts = [str(p) for p in (contact.get("first_name"), contact.get("last_name")) if p]
    return " ".join(parts) or None


def build_stage_lookup(pipelines: Iterable[dict]) -> tuple[dict[int, str], dict[int, str]]:
    """Map stage ids and pipeline ids to their display names."""
    stage_names: dict[int, str] = {}
    pipeline_names: dict[int, str] = {}
    for pipeline in pipelines:
        if pipeline.get("id") is not None:
            pipeline_names[pipeline["id"]] = pipeline.get("name") or "Unnamed"
        for stage in pipeline.get("deal_stages") or []:
            if stage.get("id") is not None:
                stage_names[stage["id"]] = stage.get("name") or "Unnamed"
    return stage_names, pipeline_names


def bucket_key(stage_id: Any, stage_names: dict[int, str]) -> str:
    """Resolve a stage id to its name, ``Stage #<id>`` when unknown, or the unassigned bucket."""
    if stage_id is None or stage_id == "":
        return UNASSIGNED_BUCKET
    if stage_id in stage_names:
        return stage_names[stage_id]
    return f"Stage #{stage_id}"


def deal_value(deal: dict) -> float:
    """The deal's own sold price, else the linked property's list price, else 0."""
    sold = unwrap_number(deal.get("sold_price"))
    if sold is not None:
        return sold
    linked = deal.get("property") or {}
    listed = unwrap_number(linked.get("price"))
    return listed if listed is not None else 0.0


def last_update(record: dict) -> Optional[datetime]:
    return parse_timestamp(record.get("updated_at")) or parse_timestamp(record.get("created_at"))


def is_stale(record: dict, now: datetime, threshold: timedelta) -> bool:
    """A record with no timestamps is never stale."""
    updated = last_update(record)
    if updated is None:
        return False
    return now - updated > threshold


def count_by(records: Iterable[dict], field: str) -> dict[str, int]:
    """Tally records by the string value of ``field`` (``"unknown"`` when missing)."""
    counts: Counter[str] = Counter()
    for record in records:
        value = record.get(field)
        counts["unknown" if value is None or value == "" else str(value)] += 1
    return dict(counts)


def summarize_pipeline(
    deals: Iterable[dict],
    stage_names: dict[int, str],
    *,
    now: Optional[datetime] = None,
    stale_after_days: int = STALE_AFTER_DAYS,
    total_known: Optional[int] = None,
    truncated: bool = False,
) -> PipelineSummary:
    """Bucket deals by stage, sum values, and collect stale deals.

    Every deal lands in exactly one bucket. ``total_known`` is the upstream's
    reported total; when it differs from what was aggregated (pagination cap)
    the summary carries a warning instead of pretending to be complete.
    """
    now = now or datetime.now(timezone.utc)
    threshold = timedelta(days=stale_after_days)

    buckets: dict[str, StageBucket] = {}
    stale: list[StaleDeal] = []
    total_value = 0.0
    aggregated = 0

    for deal in deals:
        aggregated += 1
        stage_id = deal.get("deal_stage_id")
        key = bucket_key(stage_id, stage_names)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = StageBucket(key=key, stage_id=stage_id if key != UNASSIGNED_BUCKET else None)

        value = deal_value(deal)
        bucket.count += 1
        bucket.value += value
        bucket.deal_ids.append(deal.get("id"))
        bucket.records.append(deal)
        total_value += value

        if is_stale(deal, now, threshold):
            updated = last_update(deal)
            linked = deal.get("property") or {}
            stale.append(StaleDeal(
                deal_id=deal.get("id"),
                contact_id=deal.get("client_id"),
                contact_name=contact_name(deal.get("client")),
                property_id=deal.get("property_id"),
                property_title=linked.get("title"),
                stage=key,
                last_update=updated,
                days_since_update=(now - updated).days,
            ))

    warnings = []
    if total_known is not None and total_known != aggregated:
        warnings.append(f"Summary covers {aggregated} of {total_known} deals.")
    elif truncated:
        warnings.append(f"Summary capped at {aggregated} deals; more exist upstream.")
    if warnings:
        logger.info("Pipeline summary is partial: %s", warnings[0])

    return PipelineSummary(
        buckets=list(buckets.values()),
        total_value=total_value,
        aggregated_count=aggregated,
        total_known=total_known,
        stale_after_days=stale_after_days,
        stale_deals=stale,
        warnings=warnings,
    )
