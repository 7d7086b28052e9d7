"""End-to-end tests for the resolution chain."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from rolescout import engine as engine_mod
from rolescout.boost import boosted_confidence
from rolescout.config import Settings
from rolescout.engine import ResolutionAborted, resolve_roles
from rolescout.models import Base

WS = "ws-1"


@pytest.fixture()
def run(session_factory):
    def _run(deal_id=None, **kwargs):
        kwargs.setdefault("concurrency", 1)
        return resolve_roles(WS, deal_id, session_factory=session_factory, settings=Settings(), **kwargs)
    return _run


def _only(rows):
    assert len(rows) == 1, rows
    return rows[0]


# ---------------------------------------------------------------------------
# Walkthrough scenarios
# ---------------------------------------------------------------------------


class TestScenarios:
    def test_champion_field_email_resolves_at_090(self, crm, run):
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", "Jane", "Doe", email="jane@acme.com")
        result = run()
        row = _only(crm.rows("d1", "jane"))
        assert (row.buying_role, row.role_confidence, row.role_source) == ("champion", 0.90, "crm_deal_field")
        assert result.stage_counts["crm_deal_field"] == 1

    def test_title_inference_gated_by_deal_field(self, crm, run):
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", "Jane", "Doe", email="jane@acme.com", title="VP Engineering")
        run()
        row = _only(crm.rows("d1", "jane"))
        assert (row.buying_role, row.role_confidence) == ("champion", 0.90)

    def test_meetings_over_six_days_make_a_champion(self, crm, run):
        crm.deal("d1")
        crm.contact("c1", "Max", "Power")
        crm.activities("d1", "c1", ["meeting"] * 4, [0, 2, 3, 5])
        result = run()
        row = _only(crm.rows("d1", "c1"))
        assert (row.buying_role, row.role_confidence, row.role_source) == (
            "champion", 0.40, "activity_inference",
        )
        assert result.new_discoveries.from_activities == 0

    def test_single_meeting_is_a_decision_maker(self, crm, run):
        crm.deal("d1")
        crm.contact("c1")
        crm.activities("d1", "c1", ["meeting"])
        run()
        row = _only(crm.rows("d1", "c1"))
        assert (row.buying_role, row.role_confidence, row.role_source) == (
            "decision_maker", 0.35, "activity_inference",
        )

    def test_disagreeing_enrichment_does_not_boost(self, session, crm, run):
        crm.deal("d1")
        crm.contact("c1", "Max", "Power")
        crm.activities("d1", "c1", ["meeting"] * 4, [0, 2, 3, 5])
        run()
        row = _only(crm.rows("d1", "c1"))
        row.seniority_verified = "director"
        row.department_verified = "engineering"
        session.commit()

        result = run()
        row = _only(crm.rows("d1", "c1"))
        assert (row.buying_role, row.role_confidence, row.role_source) == (
            "champion", 0.40, "activity_inference",
        )
        assert result.stage_counts["enrichment_boost"] == 0

    def test_zero_contact_deal_pulls_senior_account_contacts(self, crm, run):
        base = datetime(2025, 2, 1)
        crm.deal("d1", account_id="acc-9")
        crm.contact("vp", "Val", "Price", title="VP Sales", account_id="acc-9", updated_at=base + timedelta(days=5))
        crm.contact("dir", "Dee", "Rector", title="Director", account_id="acc-9", updated_at=base)
        crm.contact("ae", "Al", "Exec", title="Account Executive", account_id="acc-9", updated_at=base)
        result = run()
        rows = {r.contact_id: r for r in crm.rows("d1")}
        assert set(rows) == {"vp", "dir"}
        assert (rows["vp"].buying_role, rows["vp"].role_confidence, rows["vp"].role_source) == (
            "economic_buyer", 0.25, "account_seniority_match",
        )
        assert rows["dir"].buying_role == "influencer"
        assert result.new_discoveries.from_account_match == 2
        assert result.deals_with_no_contacts == 0


# ---------------------------------------------------------------------------
# Individual stages through the full chain
# ---------------------------------------------------------------------------


class TestStages:
    def test_crm_labels_are_normalized_without_touching_confidence(self, crm, run):
        crm.deal("d1")
        crm.contact("c1")
        crm.row("d1", "c1", role="Budget Holder", buying_role=None, confidence=0.95)
        result = run()
        row = _only(crm.rows("d1", "c1"))
        assert (row.buying_role, row.role_confidence, row.role_source) == (
            "economic_buyer", 0.95, "crm_contact_role",
        )
        assert result.stage_counts["normalized"] == 1

    def test_crm_contact_role_outranks_deal_field(self, crm, run):
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", email="jane@acme.com")
        crm.row("d1", "jane", role="Decision Maker", buying_role="decision_maker", confidence=0.95)
        run()
        assert _only(crm.rows("d1", "jane")).buying_role == "decision_maker"

    def test_conversation_participants_seed_new_pairs(self, crm, run):
        crm.deal("d1")
        crm.contact("c1", "Priya", "Natarajan", email="priya@acme.com", title="Director of Engineering")
        crm.contact("c2", "Tom", "Berg")
        crm.conversation("d1", [
            {"email": "PRIYA@acme.com", "name": "Priya N."},
            {"name": "Tom Berg"},
            {"name": "Unknown Person"},
        ])
        result = run()
        rows = {r.contact_id: r for r in crm.rows("d1")}
        assert (rows["c1"].buying_role, rows["c1"].role_confidence, rows["c1"].role_source) == (
            "technical_evaluator", 0.65, "conversation_participant",
        )
        assert rows["c2"].buying_role == "unknown"
        assert result.new_discoveries.from_conversations == 2

    def test_cross_deal_propagates_best_sibling_role(self, crm, run):
        crm.deal("d1")
        crm.deal("d2", stage="closed_won")
        crm.deal("d3")
        crm.contact("c1")
        crm.row("d1", "c1", buying_role="unknown")
        crm.row("d2", "c1", source="crm_deal_field", buying_role="economic_buyer", confidence=0.90)
        crm.row("d3", "c1", source="title_match", buying_role="influencer", confidence=0.55)
        run()
        rows = {r.source: r for r in crm.rows("d1", "c1")}
        assert (rows["cross_deal_match"].buying_role, rows["cross_deal_match"].role_confidence) == (
            "economic_buyer", 0.70,
        )

    def test_verified_enrichment_resolves_unknown_pair(self, crm, run):
        crm.deal("d1")
        crm.contact("c1", title="Analyst")
        crm.row("d1", "c1", buying_role="unknown", seniority="c_level", department="finance")
        run()
        rows = {r.source: r for r in crm.rows("d1", "c1")}
        inferred = rows["enrichment_inference"]
        assert (inferred.buying_role, inferred.role_confidence, inferred.role_source) == (
            "decision_maker", 0.70, "enrichment_inference",
        )

    def test_boost_confirms_matching_role(self, crm, run):
        crm.deal("d1")
        crm.contact("c1")
        crm.contact("c2")
        crm.row("d1", "c1", role="Champion", buying_role="champion", confidence=0.50,
                seniority="director", department="operations")
        crm.row("d1", "c2", role="Champion", buying_role="champion", confidence=0.85,
                seniority="manager", department="sales")
        result = run()
        first = _only(crm.rows("d1", "c1"))
        assert (first.role_confidence, first.role_source) == (0.70, "crm_contact_role+enrichment_confirmed")
        capped = _only(crm.rows("d1", "c2"))
        assert capped.role_confidence == 0.95
        assert result.stage_counts["enrichment_boost"] == 2

        run()
        assert _only(crm.rows("d1", "c1")).role_confidence == 0.70

    def test_self_inferred_rows_are_not_boosted(self, crm, run):
        crm.deal("d1")
        crm.contact("c1")
        crm.row("d1", "c1", source="enrichment_inference", buying_role="technical_evaluator",
                confidence=0.60, seniority="director", department="it")
        run()
        assert _only(crm.rows("d1", "c1")).role_confidence == 0.60

    def test_rows_without_confidence_are_not_boosted(self, crm, run):
        crm.deal("d1")
        crm.contact("c1")
        crm.row("d1", "c1", buying_role="champion", confidence=None,
                seniority="director", department="sales")
        result = run()
        row = _only(crm.rows("d1", "c1"))
        assert (row.buying_role, row.role_confidence, row.role_source) == (
            "champion", None, "crm_contact_role",
        )
        assert result.stage_counts["enrichment_boost"] == 0

    def test_activity_discovery_needs_two_activities(self, crm, run):
        crm.deal("d1")
        crm.contact("c1", title="Procurement Lead")
        crm.contact("c2")
        # Two calls, no meeting and few emails: no activity rule fires.
        crm.activities("d1", "c1", ["call", "call"])
        crm.activities("d1", "c2", ["call"])
        result = run()
        row = _only(crm.rows("d1", "c1"))
        assert (row.buying_role, row.role_confidence, row.role_source) == (
            "influencer", 0.35, "activity_discovery",
        )
        assert crm.rows("d1", "c2") == []
        assert result.new_discoveries.from_activities == 1


# ---------------------------------------------------------------------------
# Run-level properties
# ---------------------------------------------------------------------------


class TestRun:
    def test_second_run_on_resolved_data_writes_nothing(self, crm, run):
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", "Jane", "Doe", email="jane@acme.com", title="VP Engineering")
        crm.contact("c2", title="CFO")
        crm.row("d1", "c2", role="Economic Buyer", buying_role="economic_buyer", confidence=0.95)
        run()
        before = [(r.id, r.buying_role, r.role_confidence, r.role_source) for r in crm.rows()]
        second = run()
        after = [(r.id, r.buying_role, r.role_confidence, r.role_source) for r in crm.rows()]
        assert before == after
        assert set(second.stage_counts.values()) == {0}

    def test_confidence_never_decreases_across_runs(self, crm, run):
        crm.deal("d1")
        crm.contact("c1", title="Director of Operations")
        crm.row("d1", "c1", buying_role="unknown")
        run()
        first = {r.source: r.role_confidence for r in crm.rows()}
        run()
        second = {r.source: r.role_confidence for r in crm.rows()}
        for source, confidence in first.items():
            assert (second[source] or 0) >= (confidence or 0)

    def test_single_deal_scope(self, crm, run):
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.deal("d2", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", email="jane@acme.com")
        result = run("d2")
        assert crm.rows("d1") == []
        assert len(crm.rows("d2")) == 1
        assert result.total_deals == 1

    def test_closed_deals_skipped_unless_requested(self, crm, run):
        crm.deal("won", stage="closed_won", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", email="jane@acme.com")
        assert run().total_deals == 0
        assert crm.rows("won") == []
        result = run(include_closed_deals=True)
        assert result.total_deals == 1
        assert _only(crm.rows("won")).buying_role == "champion"

    def test_result_aggregates(self, crm, run):
        crm.deal("d1", custom_fields={"Champion__c": "a@acme.com", "eb": "b@acme.com"})
        crm.deal("d2", account_id=None)
        crm.contact("a", email="a@acme.com")
        crm.contact("b", email="b@acme.com", title="CTO")
        crm.contact("c", title="Engineer")
        crm.row("d1", "c", role="Technical Evaluator", buying_role=None, confidence=0.95)
        result = run()
        assert result.total_deals == result.deals_processed == 2
        assert result.deals_with_no_contacts == 1
        assert result.deals_with_champion == 1
        assert result.deals_with_economic_buyer == 1
        assert result.deals_fully_threaded == 1
        assert result.avg_contacts_per_deal == 1.5
        assert result.avg_roles_per_deal == 1.5
        assert result.contacts_resolved.total == 3
        assert result.contacts_resolved.by_source == {"crm_deal_field": 2, "crm_contact_role": 1}
        assert result.execution_ms >= 0

    def test_storage_failure_aborts_with_progress(self, crm, run, monkeypatch):
        crm.deal("d1", custom_fields={"Champion__c": "jane@acme.com"})
        crm.contact("jane", email="jane@acme.com")
        real_run_stage = engine_mod._run_stage

        def flaky(stage, *args):
            if stage.name == "cross_deal_match":
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))
            return real_run_stage(stage, *args)

        monkeypatch.setattr(engine_mod, "_run_stage", flaky)
        with pytest.raises(ResolutionAborted) as excinfo:
            run()
        assert excinfo.value.stage == "cross_deal_match"
        assert excinfo.value.completed["crm_deal_field"] == 1
        assert "title_inference" not in excinfo.value.completed
        assert _only(crm.rows("d1")).role_source == "crm_deal_field"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_parallel_workers_match_serial_run(tmp_path, crm_factory):
    results = {}
    for workers in (1, 4):
        eng = create_engine(
            f"sqlite:///{tmp_path / f'roles-{workers}.db'}", connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(eng)
        factory = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)
        with factory() as session:
            crm = crm_factory(session)
            for i in range(8):
                crm.deal(f"d{i}", custom_fields={"Champion__c": f"champ{i}@acme.com"})
                crm.contact(f"champ{i}", email=f"champ{i}@acme.com", title="Director of Operations")
                crm.contact(f"eng{i}", title="Senior Engineer")
                crm.row(f"d{i}", f"eng{i}", buying_role="unknown")
                crm.activities(f"d{i}", f"champ{i}", ["meeting"] * 3, [0, 3, 6])
        result = resolve_roles(WS, session_factory=factory, concurrency=workers, settings=Settings())
        with factory() as session:
            results[workers] = (
                sorted((r.deal_id, r.contact_id, r.source, r.buying_role, r.role_confidence)
                       for r in crm_factory(session).rows()),
                result.stage_counts,
            )
        eng.dispose()
    assert results[1] == results[4]
    assert results[4][1]["crm_deal_field"] == 8
    assert boosted_confidence(0.85) == 0.95
