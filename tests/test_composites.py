"""Tests for composite CRM operations against a mocked Propstack API."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from conftest import page_slice
from propstack_mcp import composites
from propstack_mcp.core.errors import PropstackError
from propstack_mcp.core.models import ErrorKind, LeadIntake

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

PIPELINES = [
    {
        "id": 1,
        "name": "Verkauf",
        "deal_stages": [
            {"id": 12, "name": "Besichtigung", "position": 2},
            {"id": 11, "name": "Erstkontakt", "position": 1},
        ],
    },
]


def _body(request: httpx.Request) -> dict:
    return json.loads(request.content)


# ── Contact 360 ──────────────────────────────────────────────────────────────


class TestContact360:

    async def test_all_sections(self, client, routes):
        routes.json("GET", "/contacts/7", {"id": 7, "first_name": "Anna"})
        routes.json("GET", "/saved_queries", [{"id": 1}, {"id": 2}])
        routes.json("GET", "/client_properties", {"data": [{"id": 3}], "meta": {"total_count": 1}})
        routes.json("GET", "/activities", [{"id": 4}])

        report = await composites.contact_360(client, 7)

        assert report.contact["first_name"] == "Anna"
        assert set(report.sections) == {"search_profiles", "deals", "activities"}
        assert len(report.sections["search_profiles"].data) == 2
        assert report.sections["deals"].total_count == 1
        assert report.failed_sections == []
        assert routes.calls("GET", "/saved_queries")[0].url.params["client"] == "7"

    async def test_failed_section_is_flagged(self, client, routes):
        routes.json("GET", "/contacts/7", {"id": 7})
        routes.json("GET", "/saved_queries", [])
        routes.json("GET", "/client_properties", [])
        routes.json("GET", "/activities", {"error": "forbidden"}, status=403)

        report = await composites.contact_360(client, 7)

        assert report.failed_sections == ["activities"]
        assert report.sections["activities"].error.kind is ErrorKind.FORBIDDEN
        assert report.sections["deals"].ok

    async def test_missing_contact_raises(self, client, routes):
        routes.json("GET", "/contacts/404", {"error": "not found"}, status=404)
        routes.json("GET", "/saved_queries", [])
        routes.json("GET", "/client_properties", [])
        routes.json("GET", "/activities", [])

        with pytest.raises(PropstackError) as excinfo:
            await composites.contact_360(client, 404)

        assert excinfo.value.failure.kind is ErrorKind.NOT_FOUND
        assert excinfo.value.failure.resource_id == "404"


# ── Property report ──────────────────────────────────────────────────────────


class TestPropertyReport:

    async def test_report(self, client, routes):
        routes.json("GET", "/units/5", {"id": 5, "title": "Altbau", "created_at": (NOW - timedelta(days=40)).isoformat()})
        routes.json("GET", "/client_properties", [
            {"id": 1, "client_id": 10, "category": "qualified", "deal_stage_id": 11, "client": {"name": "Anna Berg"}},
            {"id": 2, "client_id": 11, "category": "qualified", "deal_stage_id": 12, "sold_price": 410000},
        ])
        routes.json("GET", "/activities", {"data": [{"type": "call"}, {"type": "email"}, {"type": "call"}], "meta": {"total_count": 73}})

        report = await composites.property_report(client, 5, now=NOW)

        assert report.days_on_market == 40
        assert report.pipeline["total_inquiries"] == 2
        assert report.pipeline["by_category"] == {"qualified": 2}
        assert report.pipeline["total_value"] == 410000
        assert report.pipeline["interested_contacts"][0]["contact_name"] == "Anna Berg"
        assert report.activity["total"] == 73
        assert report.activity["shown"] == 3
        assert report.activity["by_type"] == {"call": 2, "email": 1}
        assert routes.calls("GET", "/units/5")[0].url.params["expand"] == "1"

    async def test_failed_deals_leave_pipeline_empty(self, client, routes):
        routes.json("GET", "/units/5", {"id": 5})
        routes.json("GET", "/client_properties", {"error": "boom"}, status=500)
        routes.json("GET", "/activities", [])

        report = await composites.property_report(client, 5, now=NOW)

        assert report.pipeline is None
        assert report.days_on_market is None
        assert report.failed_sections == ["deals"]
        assert report.activity["total"] == 0


# ── Pipeline summary ─────────────────────────────────────────────────────────


class TestPipelineSummary:

    async def test_summary(self, client, routes):
        deals = [
            {"id": 1, "deal_stage_id": 11, "updated_at": (NOW - timedelta(days=20)).isoformat(), "property": {"price": 200000}},
            {"id": 2, "deal_stage_id": 12, "updated_at": (NOW - timedelta(days=2)).isoformat(), "sold_price": 300000},
        ]
        routes.json("GET", "/deal_pipelines", PIPELINES)
        routes.add("GET", "/client_properties", lambda request: page_slice(request, deals, total=2))

        summary = await composites.pipeline_summary(client, pipeline_id=1, now=NOW)

        assert summary.pipeline_name == "Verkauf"
        assert {b.key: b.value for b in summary.buckets} == {"Erstkontakt": 200000, "Besichtigung": 300000}
        assert [d.deal_id for d in summary.stale_deals] == [1]
        assert not summary.is_partial
        request = routes.calls("GET", "/client_properties")[0]
        assert request.url.params["deal_pipeline_id"] == "1"
        assert "broker_id" not in request.url.params

    async def test_cap_makes_summary_partial(self, client, routes):
        deals = [{"id": i, "deal_stage_id": 11} for i in range(1, 251)]
        routes.json("GET", "/deal_pipelines", PIPELINES)
        routes.add("GET", "/client_properties", lambda request: page_slice(request, deals, total=250))

        summary = await composites.pipeline_summary(client, max_deals=150, now=NOW)

        assert summary.aggregated_count == 150
        assert summary.total_known == 250
        assert summary.is_partial
        assert summary.warnings == ["Summary covers 150 of 250 deals."]

    async def test_deal_walk_failure_raises(self, client, routes):
        routes.json("GET", "/deal_pipelines", PIPELINES)
        routes.json("GET", "/client_properties", {"error": "no"}, status=401)

        with pytest.raises(PropstackError) as excinfo:
            await composites.pipeline_summary(client, now=NOW)

        assert excinfo.value.failure.kind is ErrorKind.UNAUTHORIZED


# ── Matching ─────────────────────────────────────────────────────────────────


class TestMatchContacts:

    async def test_ranked_matches(self, client, routes):
        profiles = [
            {"id": 1, "active": True, "client_id": 10, "marketing_type": "BUY", "cities": ["Berlin"], "price": 300000, "price_to": 400000},
            {"id": 2, "active": True, "client_id": 11, "marketing_type": "RENT", "cities": ["Munich"]},
            {"id": 3, "active": True, "client_id": 12, "marketing_type": "BUY"},
        ]
        routes.json("GET", "/units/456", {"id": 456, "marketing_type": "BUY", "city": "Berlin", "price": 350000})
        routes.add("GET", "/saved_queries", lambda request: page_slice(request, profiles))

        report = await composites.match_contacts(client, 456)

        assert [m.profile_id for m in report.matches] == [1, 3]
        assert report.matches[0].score == 8
        assert report.profiles_fetched == 3
        assert report.truncated is False

    async def test_profile_cap_is_reported(self, client, routes):
        profiles = [{"id": i, "active": True, "marketing_type": "BUY"} for i in range(1, 31)]
        routes.json("GET", "/units/456", {"id": 456, "marketing_type": "BUY"})
        routes.add("GET", "/saved_queries", lambda request: page_slice(request, profiles, total=30))

        report = await composites.match_contacts(client, 456, max_profiles=10, top_n=5)

        assert report.profiles_fetched == 10
        assert report.truncated is True
        assert len(report.matches) == 5
        assert report.total_matches == 10
        assert routes.calls("GET", "/saved_queries")[0].url.params["per_page"] == "10"

    async def test_missing_property_raises(self, client, routes):
        routes.json("GET", "/units/1", {"error": "not found"}, status=404)
        routes.json("GET", "/saved_queries", [])

        with pytest.raises(PropstackError):
            await composites.match_contacts(client, 1)


# ── Lead intake ──────────────────────────────────────────────────────────────


class TestLeadIntake:

    async def test_new_lead_full_flow(self, client, routes):
        routes.json("GET", "/contacts", [])
        routes.json("POST", "/contacts", {"id": 77})
        routes.json("POST", "/tasks", {"id": 500})
        routes.json("GET", "/deal_pipelines", PIPELINES)
        routes.json("POST", "/client_properties", {"id": 900})
        lead = LeadIntake(
            first_name="Anna", last_name="Berg", phone="+4930123", notes="Called about the Altbau",
            property_interest="3 rooms, Prenzlauer Berg", property_id=5, broker_id=3,
        )

        result = await composites.lead_intake(client, lead, now=NOW)

        assert result.contact_id == 77
        assert result.action == "created"
        assert [s.name for s in result.steps] == ["note", "deal", "reminder"]
        assert result.failed_steps == []
        assert result.reminder_due == datetime(2024, 6, 16, 9, 0, tzinfo=timezone.utc)

        created = _body(routes.calls("POST", "/contacts")[0])
        assert created == {"client": {"first_name": "Anna", "last_name": "Berg", "phone": "+4930123", "broker_id": 3}}
        deal = _body(routes.calls("POST", "/client_properties")[0])
        assert deal["client_property"]["deal_stage_id"] == 11
        assert deal["client_property"]["deal_pipeline_id"] == 1
        tasks = {t["title"]: t for t in (_body(r)["task"] for r in routes.calls("POST", "/tasks"))}
        note = tasks["Lead intake: Anna Berg"]
        reminder = tasks["Follow up: Anna Berg"]
        assert "Interest: 3 rooms, Prenzlauer Berg" in note["body"]
        assert reminder["is_reminder"] is True
        assert reminder["property_ids"] == [5]

    async def test_existing_contact_is_updated(self, client, routes):
        routes.json("GET", "/contacts", [{"id": 42}])
        routes.json("PUT", "/contacts/42", {"id": 42})
        routes.json("POST", "/tasks", {"id": 501})

        result = await composites.lead_intake(client, LeadIntake(first_name="Max", last_name="Muster", email="max@example.com"), now=NOW)

        assert result.contact_id == 42
        assert result.action == "updated"
        assert [s.name for s in result.steps] == ["reminder"]
        assert routes.calls("POST", "/contacts") == []
        assert routes.calls("GET", "/contacts")[0].url.params["email"] == "max@example.com"

    async def test_dedup_hit_without_id_creates_contact(self, client, routes):
        routes.json("GET", "/contacts", [{"name": "Ghost"}])
        routes.json("POST", "/contacts", {"id": 88})
        routes.json("POST", "/tasks", {"id": 2})

        result = await composites.lead_intake(client, LeadIntake(first_name="A", last_name="B", phone="1"), now=NOW)

        assert result.contact_id == 88
        assert result.action == "created"
        assert len(routes.calls("POST", "/contacts")) == 1

    async def test_no_dedup_without_phone_or_email(self, client, routes):
        routes.json("POST", "/contacts", {"id": 1})
        routes.json("POST", "/tasks", {"id": 2})

        result = await composites.lead_intake(client, LeadIntake(first_name="A", last_name="B"), now=NOW)

        assert result.action == "created"
        assert routes.calls("GET", "/contacts") == []

    async def test_failed_follow_up_steps_are_reported(self, client, routes):
        routes.json("GET", "/contacts", [])
        routes.json("POST", "/contacts", {"id": 77})
        routes.json("POST", "/tasks", {"errors": {"title": ["is too long"]}}, status=422)
        routes.json("GET", "/deal_pipelines", {"error": "forbidden"}, status=403)
        lead = LeadIntake(first_name="Anna", last_name="Berg", phone="1", notes="n", property_id=5)

        result = await composites.lead_intake(client, lead, now=NOW)

        assert result.contact_id == 77
        assert sorted(result.failed_steps) == ["deal", "note", "reminder"]
        deal = next(s for s in result.steps if s.name == "deal")
        assert deal.error.kind is ErrorKind.FORBIDDEN

    async def test_contact_creation_failure_raises(self, client, routes):
        routes.json("GET", "/contacts", [])
        routes.json("POST", "/contacts", {"errors": {"last_name": ["can't be blank"]}}, status=422)

        with pytest.raises(PropstackError) as excinfo:
            await composites.lead_intake(client, LeadIntake(first_name="A", last_name="", phone="1"), now=NOW)

        assert excinfo.value.failure.field_errors == {"last_name": ["can't be blank"]}
        assert routes.calls("POST", "/tasks") == []
