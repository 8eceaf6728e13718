#!/usr/bin/env python3
# CUI // SP-CTI
"""Governance gate: human approvals, autonomy checks and escalations.

A target server's autonomy level decides which actions need a human:

    advisory, pr_only   every action
    auto_merge          high/critical risk, releases and ADR overrides
    auto_release        critical risk and ADR overrides

Unknown servers are treated as advisory. An action that needs approval is
allowed once a GovernanceApproval exists for the same target. Approvals and
escalations are written to the audit trail (governance.approval,
governance.escalation); gate checks are read-only.

Usage:
    python -m refinery.delivery.governance --check proposal <proposal_id> \\
        --server-id srv-1 --risk-level high
    python -m refinery.delivery.governance --approve proposal <proposal_id> \\
        --approved-by alice --risk-acknowledged --rollback-acknowledged
    python -m refinery.delivery.governance --request <proposal_id> --plan-id <plan_id>
    python -m refinery.delivery.governance --list --json
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import List, Optional

from refinery.compat.datetime_utils import utc_now_iso
from refinery.config import RefineryConfig
from refinery.decision.policy import requires_approval_for_risk
from refinery.resilience.errors import RefineryError
from refinery.schemas.core import ImprovementProposal
from refinery.schemas.delivery import (
    GOVERNANCE_TARGET_TYPES,
    ApprovalRequest,
    DeliveryPlan,
    GateResult,
    GovernanceApproval,
)

logger = logging.getLogger("refinery.delivery.governance")

DEFAULT_AUTONOMY = "advisory"
DEFAULT_ROLLBACK = "Revert merge commit and redeploy previous version"


def requires_approval(autonomy_level: str, target_type: str, risk_level: str) -> bool:
    """Whether ``target_type`` at ``risk_level`` needs a human under ``autonomy_level``."""
    if autonomy_level == "auto_merge" and target_type in ("release", "adr_override"):
        return True
    if autonomy_level == "auto_release" and target_type == "adr_override":
        return True
    return requires_approval_for_risk(risk_level, autonomy_level)


def build_approval_request(proposal: ImprovementProposal,
                           plan: Optional[DeliveryPlan] = None) -> ApprovalRequest:
    """Summarize a proposal (and its delivery plan's rollback) for a human reviewer."""
    criteria = "\n".join(f"  - {c}" for c in proposal.acceptance_criteria)
    return ApprovalRequest(
        target_type="proposal",
        target_id=proposal.proposal_id,
        risk_level=proposal.risk_level,
        summary=f"{proposal.title}\n\n{proposal.description}",
        rollback_plan=(plan.rollback_plan if plan is not None and plan.rollback_plan
                       else DEFAULT_ROLLBACK),
        changes_description=(f"Category: {proposal.category}\n"
                             f"Estimated LOC: {proposal.estimated_loc_change}\n"
                             f"Acceptance Criteria:\n{criteria}"),
    )


class GovernanceGate:
    """Checks and records human sign-off for Delivery Plane actions.

    Args:
        db: RefineryDB accessors (servers, approvals).
        audit: AuditLog writer.
        config: Shared Decision Plane config.
    """

    def __init__(self, db, audit, config: Optional[RefineryConfig] = None):
        self.db = db
        self.audit = audit
        self.config = config or RefineryConfig()

    def check_gate(self, target_type: str, target_id: str, server_id: str,
                   risk_level: str) -> GateResult:
        """Decide whether an action on ``target_id`` may proceed right now."""
        if target_type not in GOVERNANCE_TARGET_TYPES:
            raise ValueError(
                f"Invalid governance target type '{target_type}'. Valid: {GOVERNANCE_TARGET_TYPES}"
            )
        server = self.db.get_target_server(server_id)
        autonomy = server.autonomy_level if server is not None else DEFAULT_AUTONOMY
        approved = self.db.has_approval(target_type, target_id)

        if not requires_approval(autonomy, target_type, risk_level):
            return GateResult(
                allowed=True,
                requires_approval=False,
                has_approval=approved,
                reason=(f'Autonomy level "{autonomy}" allows automatic {target_type} '
                        f"for {risk_level} risk"),
            )
        if approved:
            return GateResult(
                allowed=True,
                requires_approval=True,
                has_approval=True,
                reason=f"Approved: governance approval exists for {target_type} {target_id}",
            )
        return GateResult(
            allowed=False,
            requires_approval=True,
            has_approval=False,
            reason=(f"Blocked: {target_type} requires human approval "
                    f"(autonomy: {autonomy}, risk: {risk_level})"),
        )

    def record_approval(self, target_type: str, target_id: str, approved_by: str,
                        risk_acknowledged: bool = False,
                        rollback_plan_acknowledged: bool = False,
                        notes: str = "") -> GovernanceApproval:
        approval = GovernanceApproval(
            approval_id=str(uuid.uuid4()),
            target_type=target_type,
            target_id=target_id,
            approved_by=approved_by,
            risk_acknowledged=risk_acknowledged,
            rollback_plan_acknowledged=rollback_plan_acknowledged,
            notes=notes,
            created_at=utc_now_iso(),
        )
        self.db.insert_governance_approval(approval)
        self.audit.record(
            "governance.approval", approved_by, target_type, target_id,
            {
                "risk_acknowledged": risk_acknowledged,
                "rollback_acknowledged": rollback_plan_acknowledged,
                "notes": notes,
            },
        )
        logger.info("Governance approval %s recorded for %s %s by %s",
                    approval.approval_id, target_type, target_id, approved_by)
        return approval

    def escalate_to_human(self, reason: str, target_type: str, target_id: str,
                          provider_disagreement: bool = False, low_confidence: bool = False,
                          high_risk: bool = False) -> dict:
        """Audit a request for human review and return the escalation message."""
        escalation_id = str(uuid.uuid4())
        triggers: List[str] = []
        if provider_disagreement:
            triggers.append("providers disagree")
        if low_confidence:
            triggers.append("low confidence")
        if high_risk:
            triggers.append("high risk level")

        self.audit.record(
            "governance.escalation", "governance_gate", target_type, target_id,
            {
                "escalation_id": escalation_id,
                "reason": reason,
                "provider_disagreement": provider_disagreement,
                "low_confidence": low_confidence,
                "high_risk": high_risk,
            },
        )
        message = (f'Human review required for {target_type} "{target_id}": {reason}. '
                   f"Triggers: {', '.join(triggers)}.")
        logger.info("Escalation %s: %s", escalation_id, message)
        return {"escalation_id": escalation_id, "message": message, "triggers": triggers}


def main():
    parser = argparse.ArgumentParser(description="Governance approvals and gate checks")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--check", nargs=2, metavar=("TARGET_TYPE", "TARGET_ID"),
                        help="Check whether an action may proceed")
    action.add_argument("--approve", nargs=2, metavar=("TARGET_TYPE", "TARGET_ID"),
                        help="Record a human approval")
    action.add_argument("--request", metavar="PROPOSAL_ID", help="Build an approval request")
    action.add_argument("--list", action="store_true", help="List recorded approvals")
    parser.add_argument("--server-id", default="self", help="Target server (with --check)")
    parser.add_argument("--risk-level", default="medium", help="Risk level (with --check)")
    parser.add_argument("--approved-by", help="Approver identity (with --approve)")
    parser.add_argument("--risk-acknowledged", action="store_true")
    parser.add_argument("--rollback-acknowledged", action="store_true")
    parser.add_argument("--notes", default="", help="Approval notes")
    parser.add_argument("--plan-id", help="Delivery plan for the rollback section (with --request)")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB

    try:
        db = RefineryDB(args.db_path)
        gate = GovernanceGate(db, AuditLog(args.db_path))

        if args.check:
            target_type, target_id = args.check
            output = gate.check_gate(target_type, target_id, args.server_id,
                                     args.risk_level).to_dict()
        elif args.approve:
            if not args.approved_by:
                raise ValueError("--approved-by is required with --approve")
            target_type, target_id = args.approve
            output = gate.record_approval(
                target_type, target_id, args.approved_by,
                risk_acknowledged=args.risk_acknowledged,
                rollback_plan_acknowledged=args.rollback_acknowledged,
                notes=args.notes,
            ).to_dict()
        elif args.request:
            proposal = db.get_proposal(args.request)
            if proposal is None:
                raise LookupError(f"Proposal '{args.request}' not found")
            plan = db.get_delivery_plan(args.plan_id) if args.plan_id else None
            output = build_approval_request(proposal, plan).to_dict()
        else:
            output = [a.to_dict() for a in db.list_approvals()]

        if args.json_output:
            print(json.dumps(output, indent=2))
        elif args.list:
            for a in output:
                print(f"{a['created_at']}  {a['target_type']:<12} {a['target_id']}  "
                      f"by {a['approved_by']}")
        elif args.check:
            state = "ALLOWED" if output["allowed"] else "BLOCKED"
            print(f"Gate [{state}]: {output['reason']}")
        else:
            for key, value in output.items():
                print(f"{key}: {value}")

    except (LookupError, ValueError, RefineryError) as e:
        if args.json_output:
            print(json.dumps({"error": str(e)}, indent=2))
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
