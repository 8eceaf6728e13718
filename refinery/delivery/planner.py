#!/usr/bin/env python3
# CUI // SP-CTI
"""Delivery plan builder.

Groups approved proposals into a delivery plan with per-proposal acceptance
criteria, a test strategy scaled to the riskiest change, a rollback plan and
an effort estimate. Plans are the input to the release agent.

Usage:
    python -m refinery.delivery.planner --server-id srv-1 --proposal <id> --proposal <id>
    python -m refinery.delivery.planner --show <plan_id> --json
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from refinery.compat.datetime_utils import utc_now_iso
from refinery.resilience.errors import RefineryPermanentError
from refinery.schemas.core import ImprovementProposal, max_risk
from refinery.schemas.delivery import DeliveryPlan

logger = logging.getLogger("refinery.delivery.planner")

LOC_PER_HOUR = 50
HOURS_PER_PROPOSAL = 0.5
DURATION_RISK_MULTIPLIER = {"low": 1.0, "medium": 1.3, "high": 1.8, "critical": 2.5}
COVERAGE_TARGET = {"critical": "90%", "high": "85%"}


def build_test_strategy(max_risk_level: str) -> str:
    lines = [
        "## Test Strategy\n",
        "### Unit Tests",
        "- Run full existing test suite, ensure zero regressions",
        "- Add unit tests for all new/modified functions",
        f"- Target coverage: {COVERAGE_TARGET.get(max_risk_level, '80%')}\n",
        "### Interface Compliance Tests",
        "- Validate all tool schemas against the published interface contract",
        "- Test resource URI resolution and access patterns",
        "- Verify error responses keep their documented shape\n",
        "### Integration Tests",
        "- End-to-end tool invocation tests against a running server",
        "- Rate limit and retry behavior validation",
        "- Auth flow tests (if applicable)\n",
        "### Security Tests",
        "- Secret scanning on all changed files",
        "- Dependency vulnerability check",
        "- Input validation fuzzing for tool parameters\n",
        "### Scorecard Evaluation",
        "- Capture pre-change scorecard baseline",
        "- Capture post-change scorecard",
        "- Verify monotonic improvement on primary dimensions",
    ]
    if max_risk_level in ("high", "critical"):
        lines += [
            "\n### Extended Validation (High Risk)",
            "- Manual code review required",
            "- Canary deployment with 10% traffic for 24h",
            "- Automated rollback if error rate exceeds 1%",
        ]
    return "\n".join(lines)


def build_rollback_plan(proposals: Sequence[ImprovementProposal], server_name: str) -> str:
    affected = "\n".join(f"- {p.proposal_id}: {p.title}" for p in proposals)
    return f"""## Rollback Plan for {server_name}

### Immediate Rollback (< 5 minutes)
1. Revert the merge commit on the main branch
2. Trigger CI to rebuild and deploy the previous version
3. Verify scorecard metrics return to baseline

### Release Rollback (< 30 minutes)
1. Identify the previous stable release tag
2. Cut a patch release from the previous tag
3. Publish to registry and redeploy
4. Record rollback reason in audit log

### Post-Rollback
1. Create postmortem document
2. Update ADR if the approach was fundamentally flawed
3. Re-triage the rolled-back proposals with new evidence
4. Adjust anti-oscillation parameters if needed

### Affected Proposals
{affected}
"""


def estimate_duration(total_loc: int, proposal_count: int, max_risk_level: str) -> float:
    """Effort in hours: LOC/50 + 0.5h per proposal, scaled by risk, at least 1h."""
    hours = total_loc / LOC_PER_HOUR + proposal_count * HOURS_PER_PROPOSAL
    hours *= DURATION_RISK_MULTIPLIER.get(max_risk_level, 1.0)
    return max(1.0, round(hours * 10) / 10)


def create_delivery_plan(
    db,
    audit,
    target_server_id: str,
    proposal_ids: Sequence[str],
    test_strategy: Optional[str] = None,
    rollback_plan: Optional[str] = None,
) -> DeliveryPlan:
    """Build and persist a delivery plan for the given proposals.

    Unknown proposal ids are skipped. Raises RefineryPermanentError when none
    of the ids resolve to a stored proposal.
    """
    proposals: List[ImprovementProposal] = []
    for proposal_id in proposal_ids:
        proposal = db.get_proposal(proposal_id)
        if proposal is None:
            logger.warning("Proposal %s not found; leaving it out of the plan", proposal_id)
            continue
        proposals.append(proposal)

    if not proposals:
        raise RefineryPermanentError("No valid proposals found for delivery plan",
                                     service="delivery")

    server = db.get_target_server(target_server_id)
    server_name = server.name if server is not None and server.name else target_server_id

    criteria: Dict[str, List[str]] = {p.proposal_id: list(p.acceptance_criteria) for p in proposals}
    total_loc = sum(p.estimated_loc_change for p in proposals)
    riskiest = max_risk(p.risk_level for p in proposals)
    hours = estimate_duration(total_loc, len(proposals), riskiest)

    plan = DeliveryPlan(
        plan_id=str(uuid.uuid4()),
        target_server_id=target_server_id,
        proposals=[p.proposal_id for p in proposals],
        acceptance_criteria=criteria,
        test_strategy=test_strategy if test_strategy is not None else build_test_strategy(riskiest),
        rollback_plan=(rollback_plan if rollback_plan is not None
                       else build_rollback_plan(proposals, server_name)),
        estimated_duration_hours=hours,
        status="draft",
        created_at=utc_now_iso(),
    )
    db.insert_delivery_plan(plan)

    audit.record(
        "delivery.plan", "planner", "delivery_plan", plan.plan_id,
        {
            "proposal_count": len(proposals),
            "total_loc": total_loc,
            "max_risk": riskiest,
            "estimated_hours": hours,
        },
    )
    logger.info("Delivery plan %s for %s: %d proposals, ~%.1fh",
                plan.plan_id, target_server_id, len(proposals), hours)
    return plan


def main():
    parser = argparse.ArgumentParser(description="Build delivery plans from approved proposals")
    parser.add_argument("--server-id", help="Target server id")
    parser.add_argument("--proposal", action="append", default=[], help="Proposal id (repeatable)")
    parser.add_argument("--show", help="Print a stored plan by id")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB

    db = RefineryDB(args.db_path)

    if args.show:
        plan = db.get_delivery_plan(args.show)
        if plan is None:
            parser.error(f"Delivery plan '{args.show}' not found")
    else:
        if not args.server_id or not args.proposal:
            parser.error("--server-id and at least one --proposal are required")
        try:
            plan = create_delivery_plan(db, AuditLog(args.db_path), args.server_id, args.proposal)
        except RefineryPermanentError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            sys.exit(1)

    if args.json_output:
        print(json.dumps(plan.to_dict(), indent=2))
        return

    print(f"Delivery plan {plan.plan_id} [{plan.status}] for {plan.target_server_id}")
    print(f"  Proposals: {len(plan.proposals)}  Estimated: {plan.estimated_duration_hours}h")
    for proposal_id, items in plan.acceptance_criteria.items():
        print(f"  {proposal_id}:")
        for item in items:
            print(f"    - {item}")


if __name__ == "__main__":
    main()
