"""Tests for the gate and conditional upsert."""
from __future__ import annotations

import pytest

from rolescout import gate
from rolescout.gate import Candidate, pair_confidence_at_least, pair_has_rows, try_assign

WS = "ws-1"


@pytest.fixture()
def pair(crm):
    crm.deal("d1")
    crm.contact("c1", "Jane", "Doe")
    return "d1", "c1"


def _cand(role="champion", confidence=0.50, source="title_match"):
    return Candidate("d1", "c1", role, confidence, source)


# ---------------------------------------------------------------------------
# Insert and per-source monotonicity
# ---------------------------------------------------------------------------


class TestUpsert:
    def test_inserts_new_key(self, session, crm, pair):
        assert try_assign(session, WS, _cand(), gate_threshold=0.50)
        [row] = crm.rows("d1", "c1")
        assert (row.buying_role, row.role_confidence, row.role_source, row.source) == (
            "champion", 0.50, "title_match", "title_match",
        )

    def test_never_downgrades_same_source(self, session, crm, pair):
        crm.row("d1", "c1", source="title_match", buying_role="influencer", confidence=0.40)
        # Gate below the existing value so only the per-source check can stop it.
        assert not try_assign(session, WS, _cand("end_user", 0.30), gate_threshold=0.45)
        [row] = crm.rows("d1", "c1")
        assert (row.buying_role, row.role_confidence) == ("influencer", 0.40)

    def test_equal_confidence_is_not_an_upgrade(self, session, crm, pair):
        crm.row("d1", "c1", source="title_match", buying_role="influencer", confidence=0.45)
        assert not try_assign(session, WS, _cand("champion", 0.45), gate_threshold=0.50)
        assert crm.rows("d1", "c1")[0].buying_role == "influencer"

    def test_upgrades_with_higher_confidence(self, session, crm, pair):
        crm.row("d1", "c1", source="title_match", buying_role="influencer", confidence=0.40)
        assert try_assign(session, WS, _cand("champion", 0.45), gate_threshold=0.45)
        [row] = crm.rows("d1", "c1")
        assert (row.buying_role, row.role_confidence) == ("champion", 0.45)

    def test_null_confidence_is_overwritten(self, session, crm, pair):
        crm.row("d1", "c1", source="title_match", buying_role="unknown", confidence=None)
        assert try_assign(session, WS, _cand("champion", 0.30), gate_threshold=0.30)
        assert crm.rows("d1", "c1")[0].role_confidence == 0.30


# ---------------------------------------------------------------------------
# Unique-key insert race
# ---------------------------------------------------------------------------


class TestInsertRace:
    @pytest.fixture()
    def racing(self, crm, pair, monkeypatch):
        # Another writer committed the key between the update and the existence check.
        crm.row("d1", "c1", source="title_match", buying_role="influencer", confidence=0.40)
        monkeypatch.setattr(gate, "_key_exists", lambda *args: False)

    def test_lower_candidate_loses_the_retry(self, session, crm, racing):
        assert not try_assign(session, WS, _cand("end_user", 0.30), gate_threshold=0.45)
        [row] = crm.rows("d1", "c1")
        assert (row.buying_role, row.role_confidence) == ("influencer", 0.40)

    def test_higher_candidate_wins_through_the_retry(self, session, crm, racing, monkeypatch):
        updates = []
        real_update = gate._conditional_update

        def first_update_misses(session, workspace_id, candidate):
            updates.append(candidate.confidence)
            if len(updates) == 1:
                return 0
            return real_update(session, workspace_id, candidate)

        monkeypatch.setattr(gate, "_conditional_update", first_update_misses)
        assert try_assign(session, WS, _cand("champion", 0.45), gate_threshold=0.45)
        assert updates == [0.45, 0.45]
        [row] = crm.rows("d1", "c1")
        assert (row.buying_role, row.role_confidence, row.source) == ("champion", 0.45, "title_match")


# ---------------------------------------------------------------------------
# Cross-source gate
# ---------------------------------------------------------------------------


class TestGate:
    def test_stronger_row_from_other_source_blocks(self, session, crm, pair):
        crm.row("d1", "c1", source="crm_deal_field", buying_role="champion", confidence=0.90)
        assert not try_assign(session, WS, _cand("technical_evaluator", 0.50), gate_threshold=0.50)
        assert len(crm.rows("d1", "c1")) == 1

    def test_gate_is_inclusive(self, session, crm, pair):
        crm.row("d1", "c1", source="cross_deal_match", buying_role="coach", confidence=0.70)
        assert not try_assign(
            session, WS, _cand("champion", 0.70, "cross_deal_match"), gate_threshold=0.70,
        )

    def test_weaker_row_from_other_source_allows_new_witness(self, session, crm, pair):
        crm.row("d1", "c1", source="activity_inference", buying_role="end_user", confidence=0.30)
        assert try_assign(session, WS, _cand("champion", 0.45), gate_threshold=0.45)
        rows = crm.rows("d1", "c1")
        assert {r.source for r in rows} == {"activity_inference", "title_match"}

    def test_discovery_only_requires_empty_pair(self, session, crm, pair):
        crm.row("d1", "c1", source="crm_contact_role", buying_role="unknown", confidence=None)
        assert not try_assign(
            session, WS, _cand("influencer", 0.35, "activity_discovery"), gate_threshold=None,
        )
        assert len(crm.rows("d1", "c1")) == 1

    def test_discovery_only_seeds_empty_pair(self, session, crm, pair):
        assert try_assign(session, WS, _cand("unknown", 0.35, "activity_discovery"), gate_threshold=None)
        assert crm.rows("d1", "c1")[0].buying_role == "unknown"

    def test_pair_helpers(self, session, crm, pair):
        assert not pair_has_rows(session, WS, "d1", "c1")
        crm.row("d1", "c1", source="title_match", buying_role="influencer", confidence=0.40)
        assert pair_has_rows(session, WS, "d1", "c1")
        assert pair_confidence_at_least(session, WS, "d1", "c1", 0.40)
        assert not pair_confidence_at_least(session, WS, "d1", "c1", 0.41)

    def test_other_workspace_rows_are_ignored(self, session, crm, pair):
        crm.row("d1", "c1", source="crm_deal_field", buying_role="champion", confidence=0.90)
        assert try_assign(session, "ws-2", _cand(), gate_threshold=0.50)
