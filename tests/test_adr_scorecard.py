# CUI // SP-CTI
"""Tests for refinery.decision.adr and refinery.decision.scorecard."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, make_proposal
from refinery.compat.datetime_utils import parse_iso
from refinery.decision.adr import ADRRegistry, format_adr_markdown
from refinery.decision.scorecard import (
    capture_scorecard,
    compare_scorecards,
    compute_overall_score,
    format_scorecard_report,
    would_degrade,
)
from refinery.schemas.core import ScorecardDimension, ScorecardSnapshot
from refinery.storage.similarity import DecisionIndex


@pytest.fixture
def registry(db, audit, db_path, config):
    return ADRRegistry(db, audit, DecisionIndex(db_path), config)


def _snapshot(scorecard_id, overall, *dims):
    return ScorecardSnapshot(scorecard_id=scorecard_id, target_server_id="srv-1",
                             captured_at="2026-03-01T12:00:00Z",
                             dimensions=tuple(dims), overall_score=overall)


# ---------------------------------------------------------------------------
# ADRs
# ---------------------------------------------------------------------------
class TestADRRegistry:
    """ADR creation, supersession and related lookup."""

    def test_create_applies_config_hysteresis(self, registry, db, audit):
        adr = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.7, now=FIXED_NOW)

        assert parse_iso(adr.cooldown_until) == FIXED_NOW + timedelta(hours=72)
        assert adr.min_confidence_margin == 0.25
        assert adr.min_consecutive_cycles == 2
        assert db.get_adr(adr.adr_id).status == "accepted"

        entry = audit.query(action="adr.record")[0]
        assert entry["target_id"] == adr.adr_id
        assert entry["details"]["cooldown_hours"] == 72

    def test_explicit_overrides(self, registry):
        adr = registry.create_adr("Cache schemas", "Cache for 5 minutes", 0.6,
                                  cooldown_hours=0, min_confidence_margin=0.1,
                                  min_consecutive_cycles=1, now=FIXED_NOW)
        assert parse_iso(adr.cooldown_until) == FIXED_NOW
        assert adr.min_confidence_margin == 0.1
        assert adr.min_consecutive_cycles == 1

    def test_create_indexes_for_similarity(self, registry, db_path):
        adr = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.7, now=FIXED_NOW)
        matches = DecisionIndex(db_path).query("Keep stdio transport Stay on stdio", k=1)
        assert matches[0].entry_id == f"adr:{adr.adr_id}"
        assert matches[0].metadata["adr_id"] == adr.adr_id
        assert matches[0].similarity == pytest.approx(1.0)

    def test_replace_supersedes_and_inherits_related(self, registry, db, audit):
        old = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.6,
                                  related_proposals=["srv-1:p1"], now=FIXED_NOW)
        result = registry.replace_adr(old.adr_id, title="Adopt HTTP transport",
                                      decision="Move to streamable HTTP", confidence=0.9,
                                      related_proposals=["srv-1:p2"], now=FIXED_NOW)

        new = result["new"]
        assert new.related_proposals == ["srv-1:p2", "srv-1:p1"]
        stored_old = db.get_adr(old.adr_id)
        assert stored_old.status == "superseded"
        assert stored_old.superseded_by == new.adr_id
        assert [a.adr_id for a in db.list_active_adrs()] == [new.adr_id]
        assert audit.query(action="adr.supersede")[0]["details"]["superseded_by"] == new.adr_id

    def test_replace_missing_returns_none(self, registry):
        assert registry.replace_adr("nope", title="x", decision="y", confidence=0.5) is None

    def test_find_related_skips_superseded(self, registry):
        old = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.6, now=FIXED_NOW)
        proposal = make_proposal(title="Keep stdio transport", description="Stay on stdio")
        assert [a.adr_id for a in registry.find_related_adrs(proposal)] == [old.adr_id]

        registry.replace_adr(old.adr_id, title="Unrelated caching", decision="Cache lookups",
                             confidence=0.9, now=FIXED_NOW)
        assert registry.find_related_adrs(proposal) == []

    def test_markdown(self, registry):
        adr = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.7,
                                  consequences=["No remote clients"], now=FIXED_NOW)
        text = format_adr_markdown(adr)
        assert text.startswith("# ADR: Keep stdio transport")
        assert "**Confidence**: 70%" in text
        assert "- No remote clients" in text


# ---------------------------------------------------------------------------
# Scorecards
# ---------------------------------------------------------------------------
class TestScorecards:

    def test_overall_is_weighted_mean(self):
        dims = [ScorecardDimension("security", 0.9, True, weight=3.0),
                ScorecardDimension("devex", 0.5, weight=1.0)]
        assert compute_overall_score(dims) == pytest.approx(0.8)

    def test_zero_weight_is_zero(self):
        assert compute_overall_score([ScorecardDimension("devex", 0.5, weight=0.0)]) == 0.0

    def test_primary_regression_detected(self):
        baseline = _snapshot("a", 0.8, ScorecardDimension("security", 0.9, True),
                             ScorecardDimension("devex", 0.7))
        current = _snapshot("b", 0.85, ScorecardDimension("security", 0.8, True),
                            ScorecardDimension("devex", 0.9))
        comparison = compare_scorecards(baseline, current)

        assert comparison.any_primary_degraded is True
        assert comparison.monotonic_improvement is False
        assert comparison.overall_delta == pytest.approx(0.05)
        assert would_degrade(baseline, current) is True

    def test_secondary_regression_is_tolerated(self):
        baseline = _snapshot("a", 0.8, ScorecardDimension("security", 0.9, True),
                             ScorecardDimension("devex", 0.7))
        current = _snapshot("b", 0.8, ScorecardDimension("security", 0.9, True),
                            ScorecardDimension("devex", 0.6))
        assert would_degrade(baseline, current) is False

    def test_missing_snapshot_never_degrades(self):
        assert would_degrade(None, _snapshot("b", 0.5)) is False

    def test_capture_persists_and_audits(self, db, audit):
        snapshot = capture_scorecard(db, audit, "srv-1", [ScorecardDimension("security", 0.6, True)])
        assert db.get_latest_scorecard("srv-1").scorecard_id == snapshot.scorecard_id
        assert snapshot.overall_score == pytest.approx(0.6)
        assert audit.query(action="scorecard.capture")[0]["target_id"] == snapshot.scorecard_id

    def test_report(self):
        text = format_scorecard_report(_snapshot("a", 0.75, ScorecardDimension("security", 0.75, True)))
        assert "**Overall Score**: 75.0%" in text
        assert "- security (PRIMARY): 75.0% (weight: 1.0)" in text
