# CUI // SP-CTI
"""Tests for refinery.delivery (delivery planner and release lifecycle)."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, make_proposal
from refinery.delivery.planner import (
    build_rollback_plan,
    build_test_strategy,
    create_delivery_plan,
    estimate_duration,
)
from refinery.delivery.release_agent import (
    ReleaseAgent,
    determine_bump_type,
    generate_changelog,
    semver_inc,
)
from refinery.resilience.errors import RecordNotFoundError, RefineryPermanentError
from refinery.schemas.core import ScorecardDimension, ScorecardSnapshot, TargetServerConfig


@pytest.fixture
def agent(db, audit, config):
    return ReleaseAgent(db, audit, config)


def _stored(db, **overrides):
    proposal = make_proposal(status="approved", **overrides)
    db.insert_proposal(proposal)
    return proposal


def _plan(db, audit, *proposals):
    return create_delivery_plan(db, audit, "srv-1", [p.proposal_id for p in proposals])


def _walk(agent, release_id, *statuses):
    for status in statuses:
        result = agent.advance_release(release_id, status)
        assert result.success, result.message


# ---------------------------------------------------------------------------
# Versioning
# ---------------------------------------------------------------------------
class TestSemver:

    @pytest.mark.parametrize("version,bump,expected", [
        ("1.2.3", "major", "2.0.0"),
        ("1.2.3", "minor", "1.3.0"),
        ("1.2.3", "patch", "1.2.4"),
        ("1.2", "patch", "1.2.1"),
        (None, "minor", "0.1.0"),
    ])
    def test_increment(self, version, bump, expected):
        assert semver_inc(version, bump) == expected

    def test_invalid_bump(self):
        with pytest.raises(ValueError):
            semver_inc("1.0.0", "huge")

    def test_behavioral_is_major(self):
        assert determine_bump_type([make_proposal(category="docs"),
                                    make_proposal(category="behavioral")]) == "major"

    def test_critical_risk_is_major(self):
        assert determine_bump_type([make_proposal(category="docs", risk_level="critical")]) == "major"

    def test_security_is_minor(self):
        assert determine_bump_type([make_proposal(category="security", risk_level="high")]) == "minor"

    def test_everything_else_is_patch(self):
        assert determine_bump_type([make_proposal(category="refactor"),
                                    make_proposal(category="prompt_only")]) == "patch"
        assert determine_bump_type([]) == "patch"


class TestChangelog:

    def test_format(self):
        proposals = [
            make_proposal(title="Validate inputs", description="Reject bad params\nDetails",
                          category="security", risk_level="medium"),
            make_proposal(title="Fix typos", description="README pass", category="docs"),
            make_proposal(title="Harden auth", description="Rotate tokens", category="security"),
        ]
        text = generate_changelog("1.1.0", "1.0.0", proposals, date="2026-03-01")
        assert text == (
            "# 1.1.0 (2026-03-01)\n\n"
            "Previous version: 1.0.0\n\n"
            "## Security\n\n"
            "- Validate inputs (medium risk)\n"
            "  - Reject bad params\n"
            "- Harden auth (low risk)\n"
            "  - Rotate tokens\n\n"
            "## Documentation\n\n"
            "- Fix typos (low risk)\n"
            "  - README pass\n\n"
            "---\n*Generated by Refinery*\n"
        )


# ---------------------------------------------------------------------------
# Release creation
# ---------------------------------------------------------------------------
class TestCreateRelease:

    def test_first_behavioral_release_is_major(self, agent, db, audit):
        plan = _plan(db, audit, _stored(db, category="behavioral"))
        release = agent.create_release("srv-1", plan.plan_id, pr_ids=["pr-7"], now=FIXED_NOW)

        assert release.version == "1.0.0"
        assert release.previous_version == "0.0.0"
        assert release.status == "planning"
        assert release.pr_ids == ["pr-7"]
        assert release.proposal_ids == plan.proposals
        assert release.changelog.startswith("# 1.0.0 (2026-03-01)")
        assert db.get_release(release.release_id).version == "1.0.0"

    def test_versions_build_on_latest_release(self, agent, db, audit):
        first = agent.create_release("srv-1", _plan(db, audit, _stored(db)).plan_id, now=FIXED_NOW)
        second = agent.create_release(
            "srv-1", _plan(db, audit, _stored(db, category="security")).plan_id,
            now=FIXED_NOW + timedelta(days=1),
        )
        assert first.version == "1.0.0"
        assert second.previous_version == "1.0.0"
        assert second.version == "1.1.0"

    def test_same_timestamp_releases_keep_incrementing(self, agent, db, audit):
        versions = [
            agent.create_release("srv-1", _plan(db, audit, _stored(db, category="docs")).plan_id,
                                 now=FIXED_NOW).version
            for _ in range(3)
        ]
        assert versions == ["0.0.1", "0.0.2", "0.0.3"]
        assert db.get_latest_release("srv-1").version == "0.0.3"
        assert [r.version for r in db.list_releases("srv-1")] == ["0.0.3", "0.0.2", "0.0.1"]

    def test_explicit_bump_and_changelog(self, agent, db, audit):
        plan = _plan(db, audit, _stored(db, category="behavioral"))
        release = agent.create_release("srv-1", plan.plan_id, version_bump="patch",
                                       custom_changelog="hand written", now=FIXED_NOW)
        assert release.version == "0.0.1"
        assert release.changelog == "hand written"

    def test_changelog_stored_as_artifact(self, agent, db, audit):
        plan = _plan(db, audit, _stored(db))
        release = agent.create_release("srv-1", plan.plan_id, now=FIXED_NOW)

        artifact = db.load_artifact(f"releases/{release.release_id}/changelog")
        assert artifact["text"] == release.changelog
        assert artifact["meta"]["tags"] == {"version": "1.0.0", "server_id": "srv-1"}

    def test_creation_is_audited(self, agent, db, audit):
        plan = _plan(db, audit, _stored(db))
        release = agent.create_release("srv-1", plan.plan_id, now=FIXED_NOW)
        entry = audit.query(action="delivery.release_created")[0]
        assert entry["target_id"] == release.release_id
        assert entry["details"]["bump_type"] == "major"

    def test_captures_latest_scorecard(self, agent, db, audit):
        db.insert_scorecard(ScorecardSnapshot(
            scorecard_id="sc-1", target_server_id="srv-1", captured_at="2026-03-01T00:00:00+00:00",
            dimensions=(ScorecardDimension("security", 0.8, True),), overall_score=0.8,
        ))
        plan = _plan(db, audit, _stored(db))
        release = agent.create_release("srv-1", plan.plan_id, now=FIXED_NOW)
        assert db.get_release(release.release_id).scorecard_at_release.scorecard_id == "sc-1"

    def test_missing_plan_raises(self, agent):
        with pytest.raises(RecordNotFoundError):
            agent.create_release("srv-1", "no-such-plan")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------
class TestReleaseLifecycle:
    """planning -> candidate -> staging -> canary -> released, plus rollback."""

    @pytest.fixture
    def release(self, agent, db, audit):
        return agent.create_release("srv-1", _plan(db, audit, _stored(db)).plan_id, now=FIXED_NOW)

    def test_full_promotion(self, agent, db, audit, release):
        _walk(agent, release.release_id, "candidate", "staging", "canary")
        result = agent.advance_release(release.release_id, "released")

        assert result.success is True
        assert result.message == "Release 1.0.0 advanced to released"
        stored = db.get_release(release.release_id)
        assert stored.status == "released"
        assert stored.published_at is not None
        assert len(audit.query(action="delivery.released")) == 4

    def test_skipping_a_stage_is_refused(self, agent, db, release):
        result = agent.advance_release(release.release_id, "staging")

        assert result.success is False
        assert result.message == 'Cannot transition from "planning" to "staging". Allowed: candidate'
        assert result.allowed == ["candidate"]
        assert db.get_release(release.release_id).status == "planning"

    def test_rollback_from_planning_is_refused(self, agent, db, audit, release):
        result = agent.rollback_release(release.release_id, "changed our minds")
        assert result.success is False
        assert db.get_release(release.release_id).status == "planning"
        assert audit.query(action="delivery.rolled_back") == []

    def test_rollback_records_reason(self, agent, db, audit, release):
        _walk(agent, release.release_id, "candidate", "staging", "canary", "released")
        result = agent.rollback_release(release.release_id, "error rate spike")

        assert result.success is True
        assert result.from_status == "released"
        stored = db.get_release(release.release_id)
        assert stored.status == "rolled_back"
        assert stored.rolled_back_at is not None
        assert stored.rollback_reason == "error rate spike"

        entry = audit.query(action="delivery.rolled_back")[0]
        assert entry["details"]["reason"] == "error rate spike"
        assert entry["details"]["from_status"] == "released"

    def test_rolled_back_is_terminal(self, agent, db, release):
        _walk(agent, release.release_id, "candidate")
        assert agent.rollback_release(release.release_id, "bad build").success is True

        result = agent.advance_release(release.release_id, "candidate")
        assert result.success is False
        assert result.allowed == []
        assert result.message == 'Cannot transition from "rolled_back" to "candidate". Allowed: '

    def test_unknown_status_is_refused(self, agent, release):
        assert agent.advance_release(release.release_id, "shipped").success is False

    def test_missing_release_raises(self, agent):
        with pytest.raises(RecordNotFoundError):
            agent.advance_release("no-such-release", "candidate")
        with pytest.raises(RecordNotFoundError):
            agent.rollback_release("no-such-release", "reason")


# ---------------------------------------------------------------------------
# Delivery planner
# ---------------------------------------------------------------------------
class TestDeliveryPlanner:

    @pytest.mark.parametrize("loc,count,risk,expected", [
        (100, 2, "low", 3.0),
        (0, 1, "low", 1.0),
        (200, 2, "high", 9.0),
        (100, 2, "medium", 3.9),
    ])
    def test_duration(self, loc, count, risk, expected):
        assert estimate_duration(loc, count, risk) == pytest.approx(expected)

    def test_plan_skips_unknown_proposals(self, db, audit):
        known = _stored(db, estimated_loc_change=100, risk_level="high",
                        acceptance_criteria=["Tests pass"])
        plan = create_delivery_plan(db, audit, "srv-1", [known.proposal_id, "missing"])

        assert plan.proposals == [known.proposal_id]
        assert plan.acceptance_criteria == {known.proposal_id: ["Tests pass"]}
        assert plan.status == "draft"
        assert db.get_delivery_plan(plan.plan_id).plan_id == plan.plan_id

        details = audit.query(action="delivery.plan")[0]["details"]
        assert details["max_risk"] == "high"
        assert details["total_loc"] == 100

    def test_plan_without_valid_proposals_raises(self, db, audit):
        with pytest.raises(RefineryPermanentError):
            create_delivery_plan(db, audit, "srv-1", ["missing"])

    def test_plan_uses_server_name(self, db, audit):
        db.upsert_target_server(TargetServerConfig(server_id="srv-1", name="weather-server"))
        plan = _plan(db, audit, _stored(db, title="Cache forecasts"))
        assert plan.rollback_plan.startswith("## Rollback Plan for weather-server")
        assert "Cache forecasts" in plan.rollback_plan

    def test_test_strategy_scales_with_risk(self):
        assert "Target coverage: 80%" in build_test_strategy("low")
        assert "Extended Validation" not in build_test_strategy("medium")
        high = build_test_strategy("critical")
        assert "Target coverage: 90%" in high
        assert "Extended Validation (High Risk)" in high

    def test_rollback_plan_lists_proposals(self):
        proposal = make_proposal(proposal_id="p-1", title="Cache forecasts")
        assert "- p-1: Cache forecasts" in build_rollback_plan([proposal], "srv-1")
