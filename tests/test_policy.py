# CUI // SP-CTI
"""Tests for refinery.decision.policy (stored rules and built-in checks)."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from datetime import timedelta

import pytest

from conftest import FIXED_NOW, make_proposal
from refinery.compat.datetime_utils import to_iso
from refinery.decision.policy import PolicyEngine, requires_approval_for_risk, seed_default_policies
from refinery.schemas.core import TargetServerConfig
from refinery.schemas.decision import PolicyRule


@pytest.fixture
def engine(db, audit, config):
    return PolicyEngine(db, audit, config)


def _register(db, **overrides):
    overrides.setdefault("server_id", "srv-1")
    overrides.setdefault("name", "example-server")
    db.upsert_target_server(TargetServerConfig(**overrides))


# ---------------------------------------------------------------------------
# Autonomy / risk tiers
# ---------------------------------------------------------------------------
class TestRiskApproval:

    @pytest.mark.parametrize("risk,autonomy,expected", [
        ("low", "advisory", True),
        ("low", "pr_only", True),
        ("medium", "auto_merge", False),
        ("high", "auto_merge", True),
        ("high", "auto_release", False),
        ("critical", "auto_release", True),
    ])
    def test_matrix(self, risk, autonomy, expected):
        assert requires_approval_for_risk(risk, autonomy) is expected


# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------
class TestBuiltinChecks:
    """Checks that apply once the target server is registered."""

    def test_unregistered_server_without_rules_is_allowed(self, engine):
        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is True
        assert result.requires_approval is False
        assert result.violations == []

    def test_pr_only_server_requires_approval(self, engine, db):
        _register(db)
        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is True
        assert result.requires_approval is True

    def test_disallowed_category_blocks_and_audits(self, engine, db, audit):
        _register(db, autonomy_level="auto_merge", allowed_categories=["security", "docs"])
        proposal = make_proposal(category="refactor")
        result = engine.evaluate(proposal, now=FIXED_NOW)

        assert result.allowed is False
        assert result.violations[0].rule_id == "builtin:category"
        assert result.violations[0].reason == 'Category "refactor" is not allowed for server example-server'

        entries = audit.query(action="policy.violation")
        assert len(entries) == 1
        assert entries[0]["target_id"] == proposal.proposal_id

    def test_oversized_change_is_only_a_warning(self, engine, db, audit):
        _register(db, autonomy_level="auto_merge")
        result = engine.evaluate(make_proposal(estimated_loc_change=600), now=FIXED_NOW)

        assert result.allowed is True
        assert [v.severity for v in result.violations] == ["warning"]
        assert "600 LOC exceeds maximum 500" in result.violations[0].reason
        assert audit.query(action="policy.violation") == []

    def test_change_budget_counts_active_proposals_in_window(self, engine, db):
        _register(db, change_budget_per_window=2)
        recent = to_iso(FIXED_NOW - timedelta(hours=1))
        for status in ("in_progress", "pr_open"):
            db.insert_proposal(make_proposal(status=status, created_at=recent))

        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is False
        assert result.violations[0].reason == "Change budget exhausted: 2/2 in the last 24h"

    def test_old_and_inactive_proposals_do_not_count(self, engine, db):
        _register(db, change_budget_per_window=2)
        db.insert_proposal(make_proposal(status="merged",
                                         created_at=to_iso(FIXED_NOW - timedelta(hours=30))))
        db.insert_proposal(make_proposal(status="triaged", created_at=to_iso(FIXED_NOW)))
        db.insert_proposal(make_proposal(status="testing", created_at=to_iso(FIXED_NOW)))

        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is True

    def test_server_window_override(self, engine, db):
        _register(db, change_budget_per_window=1, window_hours=48)
        db.insert_proposal(make_proposal(status="merged",
                                         created_at=to_iso(FIXED_NOW - timedelta(hours=30))))
        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is False
        assert "in the last 48h" in result.violations[0].reason


# ---------------------------------------------------------------------------
# Stored rules
# ---------------------------------------------------------------------------
class TestStoredRules:

    def test_seed_is_idempotent(self, db):
        assert seed_default_policies(db) == 3
        assert seed_default_policies(db) == 0
        assert len(db.list_policy_rules()) == 3

    def test_default_rules_apply(self, engine, db):
        seed_default_policies(db)
        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert len(result.applicable_rules) == 3
        # unregistered servers count as advisory, below the pr_only gate
        assert result.requires_approval is True

    def test_risk_tier_rule(self, engine, db):
        db.insert_policy_rule(PolicyRule(rule_id="r-risk", name="Risk", category="risk_tier",
                                         parameters={"max_auto_risk": "medium"}))
        assert engine.evaluate(make_proposal(risk_level="medium")).requires_approval is False
        assert engine.evaluate(make_proposal(risk_level="high")).requires_approval is True

    def test_scope_rule_blocks_other_servers(self, engine, db):
        db.insert_policy_rule(PolicyRule(rule_id="r-scope", name="Scope", category="scope",
                                         action="deny", parameters={"allowed_servers": ["srv-2"]}))
        result = engine.evaluate(make_proposal(server_id="srv-1"), now=FIXED_NOW)
        assert result.allowed is False
        assert result.violations[0].reason == "Server srv-1 is not in the allowed scope"

    def test_budget_rule_counts_in_progress(self, engine, db):
        db.insert_policy_rule(PolicyRule(rule_id="r-budget", name="Budget", category="budget",
                                         action="deny", parameters={"max_proposals_per_window": 1}))
        db.insert_proposal(make_proposal(status="in_progress"))
        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is False
        assert "1/1 proposals already in progress" in result.violations[0].reason

    def test_disabled_and_anti_oscillation_rules_are_skipped(self, engine, db):
        db.insert_policy_rule(PolicyRule(rule_id="r-off", name="Off", category="scope",
                                         parameters={"allowed_servers": ["srv-2"]}, enabled=False))
        db.insert_policy_rule(PolicyRule(rule_id="r-osc", name="Hysteresis",
                                         category="anti_oscillation"))
        result = engine.evaluate(make_proposal(), now=FIXED_NOW)
        assert result.allowed is True
        assert result.applicable_rules == []

    def test_invalid_rule_category(self):
        with pytest.raises(ValueError):
            PolicyRule(rule_id="bad", name="Bad", category="vibes")
