# CUI // SP-CTI
"""Tests for refinery.decision.anti_oscillation (hysteretic decision enforcement)."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, make_adr, make_proposal, match
from refinery.compat.datetime_utils import to_iso
from refinery.decision.adr import ADRRegistry
from refinery.decision.anti_oscillation import AntiOscillationEngine
from refinery.schemas.core import ScorecardDimension, ScorecardSnapshot
from refinery.storage.similarity import DecisionIndex


@pytest.fixture
def engine(db, audit, similarity, config):
    return AntiOscillationEngine(db, audit, similarity, config)


def _snapshot(server_id="srv-1", overall=0.5, **scores):
    return ScorecardSnapshot(
        scorecard_id=f"sc-{overall}-{len(scores)}",
        target_server_id=server_id,
        captured_at=to_iso(FIXED_NOW),
        dimensions=tuple(
            ScorecardDimension(name=name, score=score, is_primary=True)
            for name, score in scores.items()
        ),
        overall_score=overall,
    )


# ---------------------------------------------------------------------------
# should_flip
# ---------------------------------------------------------------------------
class TestShouldFlipGates:
    """Cooldown, then confidence margin, then consecutive confirmations."""

    def test_cooldown_blocks_with_remaining_hours(self, db, engine):
        adr = make_adr(db, confidence=0.5, cooldown_until=FIXED_NOW + timedelta(hours=1))
        result = engine.should_flip(adr, 0.95, now=FIXED_NOW)

        assert result.should_flip is False
        assert result.cooldown_remaining_ms == 3_600_000
        assert "1h remaining" in result.reason

    def test_partial_hours_round_up(self, db, engine):
        adr = make_adr(db, cooldown_until=FIXED_NOW + timedelta(hours=2, minutes=5))
        result = engine.should_flip(adr, 0.99, now=FIXED_NOW)
        assert "3h remaining" in result.reason

    def test_sub_millisecond_cooldown_still_blocks(self, db, engine):
        adr = make_adr(db, confidence=0.1, cooldown_until=FIXED_NOW + timedelta(microseconds=300))
        result = engine.should_flip(adr, 0.99, now=FIXED_NOW)

        assert result.should_flip is False
        assert result.cooldown_remaining_ms == 1
        assert result.reason == "Cooldown active: 1h remaining"

    def test_cooldown_ends_exactly_at_deadline(self, db, engine):
        adr = make_adr(db, confidence=0.6, cooldown_until=FIXED_NOW)
        result = engine.should_flip(adr, 0.7, now=FIXED_NOW)
        assert result.reason.startswith("Confidence gap")

    def test_cooldown_reported_before_margin(self, db, engine):
        adr = make_adr(db, confidence=0.6, cooldown_until=FIXED_NOW + timedelta(hours=5))
        result = engine.should_flip(adr, 0.61, now=FIXED_NOW)

        assert result.reason.startswith("Cooldown active")
        assert "margin" not in result.reason
        assert result.confidence_gap == pytest.approx(0.01)

    def test_margin_failure_reports_gap(self, db, engine):
        adr = make_adr(db, confidence=0.6)
        result = engine.should_flip(adr, 0.7, now=FIXED_NOW)

        assert result.should_flip is False
        assert result.cooldown_remaining_ms == 0
        assert "0.100" in result.reason
        assert "0.25" in result.reason

    def test_margin_failure_never_queries_confirmations(self, db, engine, similarity):
        adr = make_adr(db, confidence=0.6)
        engine.should_flip(adr, 0.7, now=FIXED_NOW)
        assert similarity.calls == []

    def test_insufficient_confirmations(self, db, engine, similarity):
        adr = make_adr(db, confidence=0.5)
        similarity.by_k[10] = [match("adr:a", 0.9)]
        result = engine.should_flip(adr, 0.9, now=FIXED_NOW)

        assert result.should_flip is False
        assert result.consecutive_confirmations == 1
        assert "1/2" in result.reason

    def test_only_contiguous_run_from_top_counts(self, db, engine, similarity):
        adr = make_adr(db, confidence=0.5)
        similarity.by_k[10] = [match("a", 0.9), match("b", 0.5), match("c", 0.8), match("d", 0.85)]
        result = engine.should_flip(adr, 0.9, now=FIXED_NOW)
        assert result.consecutive_confirmations == 1

    def test_confirmation_threshold_is_strict(self, db, engine, similarity):
        adr = make_adr(db, confidence=0.5)
        similarity.by_k[10] = [match("a", 0.9), match("b", 0.6)]
        result = engine.should_flip(adr, 0.9, now=FIXED_NOW)
        assert result.consecutive_confirmations == 1

    def test_all_gates_pass(self, db, engine, similarity):
        adr = make_adr(db, confidence=0.5)
        similarity.by_k[10] = [match("a", 0.9), match("b", 0.7), match("c", 0.2)]
        result = engine.should_flip(adr, 0.8, now=FIXED_NOW)

        assert result.should_flip is True
        assert result.consecutive_confirmations == 2
        assert result.reason == "All hysteresis conditions met"


# ---------------------------------------------------------------------------
# check_oscillation
# ---------------------------------------------------------------------------
class TestCheckOscillation:
    """Conflict lookup, blocking and audit."""

    def test_no_conflicting_adr(self, engine, audit):
        check = engine.check_oscillation(make_proposal(), 0.9, now=FIXED_NOW)

        assert check.blocked is False
        assert check.adr_id is None
        assert check.would_flip is False
        assert audit.query(action="oscillation.blocked") == []

    def test_adr_ref_conflict_in_cooldown_is_blocked_and_audited(self, db, engine, audit):
        adr = make_adr(db, cooldown_until=FIXED_NOW + timedelta(hours=1))
        proposal = make_proposal(adr_refs=[adr.adr_id])
        check = engine.check_oscillation(proposal, 0.99, now=FIXED_NOW)

        assert check.blocked is True
        assert check.adr_id == adr.adr_id
        assert check.reason == "Hysteresis check failed: Cooldown active: 1h remaining"

        entries = audit.query(action="oscillation.blocked")
        assert len(entries) == 1
        assert entries[0]["target_id"] == proposal.proposal_id
        assert entries[0]["details"]["conflicting_adr"] == adr.adr_id

    def test_similarity_conflict_above_threshold(self, db, engine, similarity):
        adr = make_adr(db, cooldown_until=FIXED_NOW + timedelta(hours=1))
        similarity.by_k[5] = [match(f"adr:{adr.adr_id}", 0.8, adr_id=adr.adr_id)]
        check = engine.check_oscillation(make_proposal(), 0.99, now=FIXED_NOW)
        assert check.adr_id == adr.adr_id
        assert check.blocked is True

    def test_similarity_at_threshold_is_not_a_conflict(self, db, engine, similarity):
        adr = make_adr(db)
        similarity.by_k[5] = [match(f"adr:{adr.adr_id}", 0.75, adr_id=adr.adr_id)]
        check = engine.check_oscillation(make_proposal(), 0.99, now=FIXED_NOW)
        assert check.adr_id is None

    def test_superseded_adr_is_not_a_conflict(self, db, engine, similarity):
        adr = make_adr(db, status="superseded", superseded_by="newer")
        similarity.by_k[5] = [match(f"adr:{adr.adr_id}", 0.95, adr_id=adr.adr_id)]
        check = engine.check_oscillation(make_proposal(), 0.99, now=FIXED_NOW)
        assert check.blocked is False
        assert check.adr_id is None

    def test_active_match_behind_superseded_one_is_found(self, db, engine, similarity):
        old = make_adr(db, status="superseded", superseded_by="newer")
        new = make_adr(db, cooldown_until=FIXED_NOW + timedelta(hours=1))
        similarity.by_k[5] = [
            match(f"adr:{old.adr_id}", 0.95, adr_id=old.adr_id),
            match(f"adr:{new.adr_id}", 0.95, adr_id=new.adr_id),
        ]
        check = engine.check_oscillation(make_proposal(), 0.99, now=FIXED_NOW)
        assert check.adr_id == new.adr_id
        assert check.blocked is True

    def test_walk_stops_at_similarity_threshold(self, db, engine, similarity):
        old = make_adr(db, status="superseded", superseded_by="newer")
        new = make_adr(db)
        similarity.by_k[5] = [
            match(f"adr:{old.adr_id}", 0.95, adr_id=old.adr_id),
            match(f"adr:{new.adr_id}", 0.7, adr_id=new.adr_id),
        ]
        assert engine.check_oscillation(make_proposal(), 0.99, now=FIXED_NOW).adr_id is None

    def test_permitted_flip_is_not_audited(self, db, engine, similarity, audit):
        adr = make_adr(db, confidence=0.5)
        similarity.by_k[10] = [match("a", 0.9), match("b", 0.8)]
        check = engine.check_oscillation(make_proposal(adr_refs=[adr.adr_id]), 0.9, now=FIXED_NOW)

        assert check.blocked is False
        assert check.would_flip is True
        assert adr.title in check.reason
        assert audit.query(action="oscillation.blocked") == []

    def test_primary_metric_regression_blocks(self, db, engine, similarity):
        adr = make_adr(db, confidence=0.5)
        similarity.by_k[10] = [match("a", 0.9), match("b", 0.8)]
        db.insert_scorecard(_snapshot(overall=0.8, security=0.9))
        proposal = make_proposal(adr_refs=[adr.adr_id],
                                 scorecard_target=_snapshot(overall=0.85, security=0.7))

        check = engine.check_oscillation(proposal, 0.9, now=FIXED_NOW)
        assert check.blocked is True
        assert check.reason == "Change would degrade primary scorecard metrics"

    def test_multiple_causes_are_semicolon_joined(self, db, engine):
        adr = make_adr(db, cooldown_until=FIXED_NOW + timedelta(hours=1))
        db.insert_scorecard(_snapshot(overall=0.8, security=0.9))
        proposal = make_proposal(adr_refs=[adr.adr_id],
                                 scorecard_target=_snapshot(overall=0.7, security=0.5))

        check = engine.check_oscillation(proposal, 0.99, now=FIXED_NOW)
        assert check.reason == ("Hysteresis check failed: Cooldown active: 1h remaining; "
                                "Change would degrade primary scorecard metrics")


# ---------------------------------------------------------------------------
# No-op / reversion
# ---------------------------------------------------------------------------
class TestNoOpChange:

    def test_prompt_only_under_five_lines_is_no_op(self, engine):
        assert engine.is_no_op_change(make_proposal(category="prompt_only", estimated_loc_change=4))

    def test_prompt_only_at_five_lines_is_not_no_op(self, engine):
        assert not engine.is_no_op_change(make_proposal(category="prompt_only", estimated_loc_change=5))

    def test_flat_overall_score_is_no_op(self, engine):
        proposal = make_proposal(
            estimated_loc_change=120,
            scorecard_baseline=_snapshot(overall=0.5),
            scorecard_target=_snapshot(overall=0.5005),
        )
        assert engine.is_no_op_change(proposal)

    def test_real_score_change_is_not_no_op(self, engine):
        proposal = make_proposal(
            scorecard_baseline=_snapshot(overall=0.5),
            scorecard_target=_snapshot(overall=0.6),
        )
        assert not engine.is_no_op_change(proposal)

    def test_behavioral_without_scorecards_is_not_no_op(self, engine):
        assert not engine.is_no_op_change(make_proposal(estimated_loc_change=1))


class TestDetectReversion:

    def test_high_similarity_is_reversion(self, engine, similarity):
        similarity.by_k[3] = [match("adr:a", 0.9), match("adr:b", 0.72), match("adr:c", 0.5)]
        result = engine.detect_reversion(make_proposal())

        assert result.is_reversion is True
        assert result.similar_decisions == ["adr:a", "adr:b"]
        assert result.similarity_score == 0.9
        assert similarity.calls[-1] == ("Switch transport to HTTP Replace stdio with streamable HTTP", 3)

    def test_low_similarity_is_not_reversion(self, engine, similarity):
        similarity.by_k[3] = [match("adr:a", 0.7)]
        result = engine.detect_reversion(make_proposal())
        assert result.is_reversion is False
        assert result.similar_decisions == []
        assert result.similarity_score == 0.0


# ---------------------------------------------------------------------------
# Stability
# ---------------------------------------------------------------------------
class TestStabilityScore:

    def test_no_decisions_is_fully_stable(self, engine):
        score = engine.compute_stability_score("srv-1", now=FIXED_NOW)
        assert score.stability_score == 1.0
        assert score.total_decisions == 0

    def test_recent_supersede_counts_as_flip(self, db, engine):
        make_adr(db, related_proposals=["srv-1"])
        make_adr(db, related_proposals=["srv-1:p1"], status="superseded", superseded_by="x",
                 updated_at=to_iso(FIXED_NOW - timedelta(hours=2)))
        make_adr(db, related_proposals=["srv-1"], status="superseded", superseded_by="y",
                 updated_at=to_iso(FIXED_NOW - timedelta(hours=48)))
        make_adr(db, related_proposals=["srv-2"])

        score = engine.compute_stability_score("srv-1", now=FIXED_NOW)
        assert score.total_decisions == 3
        assert score.flips_in_window == 1
        assert score.stability_score == pytest.approx(2 / 3)


# ---------------------------------------------------------------------------
# Replaced decisions (real index)
# ---------------------------------------------------------------------------
class TestReplacedDecisions:
    """A replacement ADR keeps its hysteresis protection."""

    @pytest.fixture
    def index(self, db_path):
        return DecisionIndex(db_path)

    def test_replacement_adr_blocks_during_cooldown(self, db, audit, config, index):
        registry = ADRRegistry(db, audit, index, config)
        old = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.6,
                                  now=FIXED_NOW - timedelta(days=10))
        new = registry.replace_adr(old.adr_id, title="Keep stdio transport",
                                   decision="Stay on stdio", confidence=0.9,
                                   now=FIXED_NOW)["new"]

        engine = AntiOscillationEngine(db, audit, index, config)
        proposal = make_proposal(title="Keep stdio transport", description="Stay on stdio")
        check = engine.check_oscillation(proposal, 0.95, now=FIXED_NOW + timedelta(hours=1))

        assert check.adr_id == new.adr_id
        assert check.blocked is True
        assert check.reason == "Hysteresis check failed: Cooldown active: 71h remaining"

    def test_superseded_adr_leaves_the_index(self, db, audit, config, index):
        registry = ADRRegistry(db, audit, index, config)
        old = registry.create_adr("Keep stdio transport", "Stay on stdio", 0.6, now=FIXED_NOW)
        new = registry.replace_adr(old.adr_id, title="Keep stdio transport",
                                   decision="Stay on stdio", confidence=0.9, now=FIXED_NOW)["new"]

        ids = [m.entry_id for m in index.query("Keep stdio transport Stay on stdio", k=5)]
        assert ids == [f"adr:{new.adr_id}"]
        assert index.remove(f"adr:{old.adr_id}") is False
