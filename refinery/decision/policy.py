#!/usr/bin/env python3
# CUI // SP-CTI
"""Policy engine for the Decision Plane.

Enforces scope constraints, change budgets, risk tiers and autonomy levels.
Stored rules (``policies`` collection) are evaluated first, then three
built-in checks that apply whenever the target server is registered:

    builtin:change_budget  active proposals in the rolling window (blocking)
    builtin:category       server's allowed categories (blocking)
    builtin:loc_budget     estimated LOC over max_loc_per_pr (warning)

A blocking violation makes the proposal not allowed; autonomy level and
risk-tier rules decide whether a human must approve.

Usage:
    python -m refinery.decision.policy --seed
    python -m refinery.decision.policy --list --json
"""

import argparse
import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from refinery.compat.datetime_utils import parse_iso, utc_now, utc_now_iso
from refinery.config import RefineryConfig, load_config
from refinery.schemas.core import AUTONOMY_LEVELS, ImprovementProposal, TargetServerConfig, risk_ordinal
from refinery.schemas.decision import PolicyEvaluation, PolicyRule, PolicyViolation

logger = logging.getLogger("refinery.policy")

ACTIVE_STATUSES = ("in_progress", "pr_open", "testing", "merged")


def requires_approval_for_risk(risk_level: str, autonomy_level: str) -> bool:
    """Whether a change at ``risk_level`` needs a human under ``autonomy_level``."""
    if autonomy_level == "auto_merge":
        return risk_level in ("high", "critical")
    if autonomy_level == "auto_release":
        return risk_level == "critical"
    # advisory, pr_only, and anything unrecognized
    return True


class PolicyEngine:
    """Evaluates proposals against stored rules and built-in checks."""

    def __init__(self, db, audit, config: Optional[RefineryConfig] = None):
        self.db = db
        self.audit = audit
        self.config = config or RefineryConfig()

    def evaluate(self, proposal: ImprovementProposal,
                 now: Optional[datetime] = None) -> PolicyEvaluation:
        now = now or utc_now()
        server = self.db.get_target_server(proposal.target_server_id)

        violations: List[PolicyViolation] = []
        applicable: List[str] = []
        requires_approval = False

        for rule in self.db.list_policy_rules(enabled=True):
            applies, violation, needs_approval = self._evaluate_rule(rule, proposal, server)
            if not applies:
                continue
            applicable.append(rule.rule_id)
            if violation is not None:
                violations.append(violation)
            requires_approval = requires_approval or needs_approval

        if server is not None:
            for check in (
                self._check_change_budget(proposal, server, now),
                self._check_category(proposal, server),
                self._check_loc(proposal),
            ):
                if check is not None:
                    violations.append(check)
            if requires_approval_for_risk(proposal.risk_level, server.autonomy_level):
                requires_approval = True

        allowed = not any(v.severity == "blocking" for v in violations)
        if not allowed:
            self.audit.record(
                "policy.violation", "policy_engine", "proposal", proposal.proposal_id,
                {"violations": [v.reason for v in violations]},
            )
            logger.info("Proposal %s blocked by policy: %s", proposal.proposal_id,
                        "; ".join(v.reason for v in violations if v.severity == "blocking"))

        return PolicyEvaluation(
            proposal_id=proposal.proposal_id,
            allowed=allowed,
            requires_approval=requires_approval,
            violations=violations,
            applicable_rules=applicable,
        )

    # -- Stored rules ---------------------------------------------------------

    def _evaluate_rule(self, rule: PolicyRule, proposal: ImprovementProposal,
                       server: Optional[TargetServerConfig]):
        """Returns (applies, violation_or_None, requires_approval)."""
        params = rule.parameters or {}

        if rule.category == "scope":
            allowed_servers = params.get("allowed_servers") or []
            if allowed_servers and proposal.target_server_id not in allowed_servers:
                return True, PolicyViolation(
                    rule_id=rule.rule_id,
                    rule_name=rule.name,
                    reason=f"Server {proposal.target_server_id} is not in the allowed scope",
                    severity="blocking",
                ), False
            return True, None, False

        if rule.category == "risk_tier":
            max_auto_risk = params.get("max_auto_risk", "medium")
            return True, None, risk_ordinal(proposal.risk_level) > risk_ordinal(max_auto_risk)

        if rule.category == "budget":
            max_per_window = int(params.get("max_proposals_per_window", 5))
            in_progress = self.db.list_proposals(proposal.target_server_id, status="in_progress")
            if len(in_progress) >= max_per_window:
                return True, PolicyViolation(
                    rule_id=rule.rule_id,
                    rule_name=rule.name,
                    reason=(f"Change budget exhausted: {len(in_progress)}/{max_per_window} "
                            "proposals already in progress"),
                    severity="blocking",
                ), False
            return True, None, False

        if rule.category == "autonomy":
            required = params.get("min_autonomy_level", "pr_only")
            current = server.autonomy_level if server is not None else "advisory"
            return True, None, AUTONOMY_LEVELS.index(required) > AUTONOMY_LEVELS.index(current)

        # anti_oscillation rules are enforced by the anti-oscillation engine
        return False, None, False

    # -- Built-in checks ------------------------------------------------------

    def _check_change_budget(self, proposal, server: TargetServerConfig,
                             now: datetime) -> Optional[PolicyViolation]:
        budget = server.change_budget_per_window
        if budget is None:
            budget = self.config.change_budget_per_window
        window_hours = server.window_hours or self.config.window_hours
        window_start = now - timedelta(hours=window_hours)

        recent = [
            p for p in self.db.list_proposals(server.server_id)
            if p.status in ACTIVE_STATUSES and p.created_at
            and parse_iso(p.created_at) >= window_start
        ]
        if len(recent) >= budget:
            return PolicyViolation(
                rule_id="builtin:change_budget",
                rule_name="Change Budget",
                reason=f"Change budget exhausted: {len(recent)}/{budget} in the last {window_hours}h",
                severity="blocking",
            )
        return None

    @staticmethod
    def _check_category(proposal, server: TargetServerConfig) -> Optional[PolicyViolation]:
        if not server.allowed_categories or proposal.category in server.allowed_categories:
            return None
        return PolicyViolation(
            rule_id="builtin:category",
            rule_name="Category Restriction",
            reason=f'Category "{proposal.category}" is not allowed for server {server.name or server.server_id}',
            severity="blocking",
        )

    def _check_loc(self, proposal) -> Optional[PolicyViolation]:
        max_loc = self.config.max_loc_per_pr
        if proposal.estimated_loc_change <= max_loc:
            return None
        return PolicyViolation(
            rule_id="builtin:loc_budget",
            rule_name="LOC Budget",
            reason=f"Estimated {proposal.estimated_loc_change} LOC exceeds maximum {max_loc} per PR",
            severity="warning",
        )


DEFAULT_POLICIES = (
    {
        "name": "Default Risk Tier",
        "description": "Require human approval for high/critical risk changes",
        "category": "risk_tier",
        "condition": "proposal.risk_level in [high, critical]",
        "action": "require_approval",
        "parameters": {"max_auto_risk": "medium"},
    },
    {
        "name": "Default Change Budget",
        "description": "Limit concurrent in-progress proposals per server",
        "category": "budget",
        "condition": "active_proposals >= max_proposals_per_window",
        "action": "deny",
        "parameters": {"max_proposals_per_window": 5},
    },
    {
        "name": "Default Autonomy Gate",
        "description": "Enforce PR-only autonomy as the minimum level",
        "category": "autonomy",
        "condition": "server.autonomy_level < min_autonomy_level",
        "action": "require_approval",
        "parameters": {"min_autonomy_level": "pr_only"},
    },
)


def seed_default_policies(db) -> int:
    """Insert the default rules unless any rule exists. Returns the count inserted."""
    if db.list_policy_rules():
        return 0
    now = utc_now_iso()
    for spec in DEFAULT_POLICIES:
        db.insert_policy_rule(PolicyRule(rule_id=str(uuid.uuid4()), created_at=now, **spec))
    logger.info("Seeded %d default policy rules", len(DEFAULT_POLICIES))
    return len(DEFAULT_POLICIES)


def main():
    parser = argparse.ArgumentParser(description="Manage Decision Plane policy rules")
    parser.add_argument("--seed", action="store_true", help="Seed default rules if none exist")
    parser.add_argument("--list", action="store_true", help="List rules")
    parser.add_argument("--evaluate", help="Evaluate a stored proposal by id")
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB

    db = RefineryDB(args.db_path)

    if args.seed:
        count = seed_default_policies(db)
        print(f"Seeded {count} default policy rule(s)")

    if args.list:
        rules = db.list_policy_rules()
        if args.json_output:
            print(json.dumps([r.to_dict() for r in rules], indent=2))
        else:
            for r in rules:
                state = "on " if r.enabled else "off"
                print(f"[{state}] {r.rule_id}  {r.category:<12} {r.name}  {r.parameters}")

    if args.evaluate:
        proposal = db.get_proposal(args.evaluate)
        if proposal is None:
            parser.error(f"Proposal '{args.evaluate}' not found")
        engine = PolicyEngine(db, AuditLog(args.db_path), load_config(args.config))
        result = engine.evaluate(proposal)
        if args.json_output:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(f"Allowed: {result.allowed}  Requires approval: {result.requires_approval}")
            for v in result.violations:
                print(f"  [{v.severity}] {v.rule_name}: {v.reason}")


if __name__ == "__main__":
    main()
