#!/usr/bin/env python3
# CUI // SP-CTI
"""Research case lifecycle manager.

Moves a research case through the overlay pipeline, one step per call:

    intake -> synthesize -> review -> decide -> freeze -> implement
           -> evaluate -> release

Each advance spends one iteration of the case's change budget; a case that
exceeds its iteration budget is rejected. Artifacts supplied with an
advance are merged into the case before the step decides whether it can
move on. "freeze" is the alignment gate and only proceeds with explicit
user approval; the governance gate verdict is recorded with the freeze.
Terminal cases (completed, rejected, deferred) are never advanced again.

Usage:
    python -m refinery.research_ops.case_manager --create --name "Adopt OAuth" \\
        --owner alice --problem "Static tokens leak" --goal "Short-lived tokens" --risk-lane medium
    python -m refinery.research_ops.case_manager --advance RC-20260101-adopt-oauth \\
        --artifacts step.json
    python -m refinery.research_ops.case_manager --list --json
"""

import argparse
import json
import logging
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from refinery.compat.datetime_utils import to_iso, utc_now, utc_now_iso
from refinery.config import RefineryConfig
from refinery.delivery.governance import GovernanceGate
from refinery.resilience.errors import RecordNotFoundError, RefineryError, RefineryPermanentError
from refinery.schemas.research_ops import (
    OVERLAY_PIPELINE,
    OVERLAY_TO_STATUS,
    PHI_CLASSIFICATIONS,
    REVIEW_PERSPECTIVES,
    RISK_LANES,
    TARGET_CONSUMERS,
    AdvanceResult,
    ChangeBudget,
    ChangeProposal,
    DecisionArtifact,
    EvaluationReport,
    EvidenceEntry,
    ImplementationBrief,
    IntakeArtifact,
    ResearchCase,
    ReviewArtifact,
)
from refinery.research_ops.validation import has_external_sources

logger = logging.getLogger("refinery.research_ops")

PR_BUDGET_BY_LANE = {"high": 3, "medium": 5, "low": 8}
ITERATIONS_PER_PR = 2
SLUG_MAX_LENGTH = 40
DEFAULT_TARGET_SYSTEM = "refinery"
# Research cases improve the Refinery itself
GOVERNANCE_SERVER = "self"


def make_case_id(initiative_name: str, now: Optional[datetime] = None) -> str:
    """RC-YYYYMMDD-<slug> with a lowercase, dash-separated slug of at most 40 chars."""
    now = now or utc_now()
    slug = re.sub(r"[^a-z0-9]+", "-", initiative_name.lower()).strip("-")[:SLUG_MAX_LENGTH]
    if not slug:
        raise ValueError(f"Initiative name {initiative_name!r} has no usable characters for a case id")
    return f"RC-{now.strftime('%Y%m%d')}-{slug}"


def _coerce(value, model):
    if value is None or isinstance(value, model):
        return value
    return model.from_dict(value)


class ResearchCaseManager:
    """Creates research cases and advances them through the overlay pipeline.

    Args:
        db: RefineryDB accessors (research_cases collection).
        audit: AuditLog writer.
        config: Shared Decision Plane config.
        governance: Optional GovernanceGate consulted when a proposal is frozen.
    """

    def __init__(self, db, audit, config: Optional[RefineryConfig] = None, governance=None):
        self.db = db
        self.audit = audit
        self.config = config or RefineryConfig()
        self.governance = governance or GovernanceGate(db, audit, self.config)

    # -- Create / query -------------------------------------------------------

    def create_case(
        self,
        initiative_name: str,
        owner: str,
        problem_statement: str,
        goals: List[str],
        risk_lane: str,
        non_goals: Optional[List[str]] = None,
        phi_classification: str = "none",
        target_consumer: str = "both",
        target_system: str = DEFAULT_TARGET_SYSTEM,
        now: Optional[datetime] = None,
    ) -> ResearchCase:
        """Open a new case at the intake step with a risk-scaled change budget."""
        if risk_lane not in RISK_LANES:
            raise ValueError(f"Invalid risk lane '{risk_lane}'. Valid: {RISK_LANES}")
        if phi_classification not in PHI_CLASSIFICATIONS:
            raise ValueError(
                f"Invalid PHI classification '{phi_classification}'. Valid: {PHI_CLASSIFICATIONS}"
            )
        if target_consumer not in TARGET_CONSUMERS:
            raise ValueError(f"Invalid target consumer '{target_consumer}'. Valid: {TARGET_CONSUMERS}")

        now = now or utc_now()
        case_id = make_case_id(initiative_name, now)
        if self.db.get_case(case_id) is not None:
            raise RefineryPermanentError(f"Research case '{case_id}' already exists",
                                         service="research_ops")

        max_prs = PR_BUDGET_BY_LANE[risk_lane]
        case = ResearchCase(
            case_id=case_id,
            initiative_name=initiative_name,
            owner=owner,
            problem_statement=problem_statement,
            goals=list(goals),
            non_goals=list(non_goals or []),
            risk_lane=risk_lane,
            phi_classification=phi_classification,
            target_consumer=target_consumer,
            intake=IntakeArtifact(target_system=target_system, success_criteria=list(goals)),
            change_budget=ChangeBudget(max_prs=max_prs, max_iterations=max_prs * ITERATIONS_PER_PR),
            created_at=to_iso(now),
        )
        self.db.save_case(case)

        self.audit.record(
            "research_ops.case_created", owner, "research_case", case_id,
            {
                "initiative_name": initiative_name,
                "risk_lane": risk_lane,
                "phi_classification": phi_classification,
            },
        )
        logger.info("Opened research case %s (%s lane, budget %d PRs)", case_id, risk_lane, max_prs)
        return case

    def get_case(self, case_id: str) -> Optional[ResearchCase]:
        return self.db.get_case(case_id)

    def list_cases(self, status: Optional[str] = None) -> List[ResearchCase]:
        return self.db.list_cases(status)

    # -- Advance --------------------------------------------------------------

    def advance_case(
        self,
        case_id: str,
        source_content: Optional[Dict[str, str]] = None,
        user_approval: bool = False,
        synthesis: Optional[str] = None,
        evidence_matrix: Optional[list] = None,
        reviews: Optional[dict] = None,
        decision=None,
        proposal=None,
        brief=None,
        evaluation=None,
        release_notes: Optional[str] = None,
    ) -> AdvanceResult:
        """Run the current overlay step once.

        Artifacts may be passed as schema objects or plain dicts. Raises
        RecordNotFoundError when the case does not exist.
        """
        case = self.db.get_case(case_id)
        if case is None:
            raise RecordNotFoundError("research_case", case_id)

        previous_overlay = case.current_overlay

        if case.is_terminal:
            return AdvanceResult(
                case_id=case_id,
                previous_overlay=previous_overlay,
                current_overlay=case.current_overlay,
                status=case.status,
                action_taken=f"Case is already {case.status}. No further advancement possible.",
                next_action="Open a new research case to start a fresh cycle.",
            )

        case.change_budget.iterations_used += 1
        if case.change_budget.iterations_used > case.change_budget.max_iterations:
            case.status = "rejected"
            self.db.save_case(case)
            self.audit.record(
                "research_ops.case_rejected", "system", "research_case", case_id,
                {"reason": "iteration_budget_exhausted",
                 "max_iterations": case.change_budget.max_iterations},
            )
            logger.warning("Research case %s rejected: iteration budget exhausted", case_id)
            return AdvanceResult(
                case_id=case_id,
                previous_overlay=previous_overlay,
                current_overlay=case.current_overlay,
                status=case.status,
                action_taken="Change budget exhausted. Case rejected to prevent runaway iteration.",
                next_action=(f"Iteration budget of {case.change_budget.max_iterations} exceeded. "
                             "Open a new case if the research should continue."),
            )

        step = getattr(self, f"_step_{case.current_overlay}")
        action, next_action, needs_approval = step(
            case,
            source_content=source_content,
            user_approval=user_approval,
            synthesis=synthesis,
            evidence_matrix=evidence_matrix,
            reviews=reviews,
            decision=_coerce(decision, DecisionArtifact),
            proposal=_coerce(proposal, ChangeProposal),
            brief=_coerce(brief, ImplementationBrief),
            evaluation=_coerce(evaluation, EvaluationReport),
            release_notes=release_notes,
        )

        self.db.save_case(case)
        self.audit.record(
            "research_ops.case_advanced", "system", "research_case", case_id,
            {"from_overlay": previous_overlay, "to_overlay": case.current_overlay,
             "status": case.status},
        )
        logger.info("Research case %s: %s -> %s [%s]",
                    case_id, previous_overlay, case.current_overlay, case.status)

        return AdvanceResult(
            case_id=case_id,
            previous_overlay=previous_overlay,
            current_overlay=case.current_overlay,
            status=case.status,
            action_taken=action,
            needs_user_approval=needs_approval,
            next_action=next_action,
        )

    # -- Overlay steps ----------------------------------------------------------
    # Each returns (action_taken, next_action, needs_user_approval).

    @staticmethod
    def _move_to_next_overlay(case: ResearchCase):
        case.overlay_index += 1
        if case.overlay_index >= len(OVERLAY_PIPELINE):
            case.overlay_index = len(OVERLAY_PIPELINE) - 1
            case.current_overlay = OVERLAY_PIPELINE[-1]
            case.status = "completed"
        else:
            case.current_overlay = OVERLAY_PIPELINE[case.overlay_index]
            case.status = OVERLAY_TO_STATUS[case.current_overlay]

    def _merge_sources(self, case: ResearchCase, source_content: Optional[Dict[str, str]]) -> int:
        if not source_content:
            return 0
        case.sources.update(source_content)
        if case.phi_classification != "none" and has_external_sources(case):
            logger.warning("Research case %s is PHI-classified (%s) but received external sources",
                           case.case_id, case.phi_classification)
        return len(source_content)

    def _step_intake(self, case: ResearchCase, source_content=None, **_):
        count = self._merge_sources(case, source_content)
        self._move_to_next_overlay(case)
        if count:
            action = f"Ingested {count} source(s). Moving to synthesis."
        else:
            action = "Intake complete (no sources provided yet). Moving to synthesis."
        return action, "Synthesize the sources into a structured summary and evidence matrix.", False

    def _step_synthesize(self, case: ResearchCase, source_content=None, synthesis=None,
                         evidence_matrix=None, **_):
        self._merge_sources(case, source_content)
        if synthesis:
            case.synthesis = synthesis
        if evidence_matrix:
            case.evidence_matrix = [_coerce(e, EvidenceEntry) for e in evidence_matrix]
        if not case.synthesis:
            return ("Synthesis needed.",
                    "Provide a synthesis (and optionally an evidence matrix) to continue.", False)
        self._move_to_next_overlay(case)
        return ("Synthesis complete. Moving to review.",
                f"Collect reviews from: {', '.join(REVIEW_PERSPECTIVES)}.", False)

    def _step_review(self, case: ResearchCase, reviews=None, **_):
        for perspective, review in (reviews or {}).items():
            if review is not None:
                case.reviews[perspective] = _coerce(review, ReviewArtifact)
        missing = [p for p in REVIEW_PERSPECTIVES if p not in case.reviews]
        if missing:
            done = len(REVIEW_PERSPECTIVES) - len(missing)
            return (f"{done}/{len(REVIEW_PERSPECTIVES)} reviews complete. Missing: {', '.join(missing)}.",
                    f"Provide the missing reviews: {', '.join(missing)}.", False)
        self._move_to_next_overlay(case)
        return ("All reviews complete. Moving to decision.",
                "Consolidate the reviews into a decision (accepted, rejected or deferred).", False)

    def _step_decide(self, case: ResearchCase, decision=None, proposal=None, brief=None, **_):
        if decision is not None:
            case.decision = decision
            if proposal is not None:
                case.proposal = proposal
            if brief is not None:
                case.brief = brief

        if case.decision is None:
            return ("Decision needed.",
                    "Record a decision consolidating the reviews.", False)

        if case.decision.outcome == "rejected":
            case.status = "rejected"
            self.audit.record(
                "research_ops.case_rejected", case.owner, "research_case", case.case_id,
                {"reason": "decision_rejected", "rationale": case.decision.rationale},
            )
            return (f"Case rejected: {case.decision.rationale}",
                    "Open a new case to explore alternative approaches.", False)

        if case.decision.outcome == "deferred":
            case.status = "deferred"
            return (f"Case deferred: {case.decision.rationale}",
                    "Revisit the initiative in a new case when conditions change.", False)

        self._move_to_next_overlay(case)
        return ("Decision accepted. Moving to proposal freeze (alignment gate).",
                "Review the change proposal and approve to freeze scope.", True)

    def _step_freeze(self, case: ResearchCase, user_approval=False, **_):
        if not user_approval:
            return ("Alignment gate: awaiting user approval to freeze the proposal.",
                    "Approve to freeze the proposal and begin implementation.", True)

        if case.proposal is not None and not case.proposal.frozen:
            case.proposal.frozen = True
            case.proposal.frozen_at = utc_now_iso()
        gate = self.governance.check_gate("proposal", case.case_id, GOVERNANCE_SERVER,
                                          case.risk_lane)
        self._move_to_next_overlay(case)
        self.audit.record(
            "research_ops.proposal_frozen", case.owner, "research_case", case.case_id,
            {"proposal_title": case.proposal.title if case.proposal is not None else "unknown",
             "risk_lane": case.risk_lane,
             "governance_allowed": gate.allowed,
             "governance_reason": gate.reason},
        )
        if gate.allowed:
            action = ("User approved. Proposal frozen. Governance gate passed. "
                      "Moving to implementation.")
        else:
            action = ("User approved. Proposal frozen. Moving to implementation "
                      f"(governance: {gate.reason}).")
        return (action, "Implement strictly within the frozen proposal scope.", False)

    def _step_implement(self, case: ResearchCase, **_):
        self._move_to_next_overlay(case)
        return ("Implementation phase recorded. Moving to evaluation.",
                "Run tests, scorecards and policy checks, then submit an evaluation report.", False)

    def _step_evaluate(self, case: ResearchCase, evaluation=None, user_approval=False, **_):
        if evaluation is not None:
            case.evaluation = evaluation
        if case.evaluation is None:
            return ("Evaluation needed.",
                    "Submit an evaluation report with test, policy and stability results.", False)
        if not case.evaluation.overall_pass and not user_approval:
            failures = [c.check for c in case.evaluation.policy_checks if not c.passed]
            return ("Evaluation FAILED. Review failures and decide next steps.",
                    ("Failed policy checks: " + (", ".join(failures) or "none") +
                     ". Approve to release anyway, or submit a new evaluation."),
                    True)
        self._move_to_next_overlay(case)
        if case.evaluation.overall_pass:
            action = "Evaluation passed. Moving to release."
        else:
            action = "Evaluation failed but user approved release. Moving to release."
        return action, "Publish the release and record release notes.", False

    def _step_release(self, case: ResearchCase, release_notes=None, **_):
        if release_notes:
            case.release_notes = release_notes
        case.status = "completed"
        self.audit.record(
            "research_ops.case_completed", case.owner, "research_case", case.case_id,
            {
                "initiative_name": case.initiative_name,
                "decision_outcome": case.decision.outcome if case.decision is not None else "unknown",
                "consensus_id": case.consensus_id,
                "delivery_plan_id": case.delivery_plan_id,
                "release_id": case.release_id,
            },
        )
        return "Case completed.", "No further steps.", False


def _print_case(case: ResearchCase):
    budget = case.change_budget
    print(f"{case.case_id}  [{case.status}] step {case.overlay_index + 1}/{len(OVERLAY_PIPELINE)} "
          f"({case.current_overlay})  owner={case.owner}  "
          f"iterations {budget.iterations_used}/{budget.max_iterations}")


def main():
    parser = argparse.ArgumentParser(description="Manage research cases")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--create", action="store_true", help="Open a new case")
    action.add_argument("--advance", metavar="CASE_ID", help="Advance a case one step")
    action.add_argument("--show", metavar="CASE_ID", help="Show a case")
    action.add_argument("--list", action="store_true", help="List cases")
    parser.add_argument("--name", help="Initiative name (with --create)")
    parser.add_argument("--owner", default="", help="Case owner")
    parser.add_argument("--problem", default="", help="Problem statement")
    parser.add_argument("--goal", action="append", default=[], help="Goal (repeatable)")
    parser.add_argument("--non-goal", action="append", default=[], help="Non-goal (repeatable)")
    parser.add_argument("--risk-lane", choices=RISK_LANES, default="medium", help="Risk lane")
    parser.add_argument("--phi", choices=PHI_CLASSIFICATIONS, default="none", help="PHI classification")
    parser.add_argument("--artifacts", type=Path, help="JSON file of advance inputs")
    parser.add_argument("--approve", action="store_true", help="Grant user approval (freeze gate)")
    parser.add_argument("--status", help="Filter --list by status")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB

    manager = ResearchCaseManager(RefineryDB(args.db_path), AuditLog(args.db_path))

    try:
        if args.list:
            cases = manager.list_cases(args.status)
            if args.json_output:
                print(json.dumps([c.to_dict() for c in cases], indent=2))
            else:
                for c in cases:
                    _print_case(c)
            return

        if args.show:
            case = manager.get_case(args.show)
            if case is None:
                raise RecordNotFoundError("research_case", args.show)
            if args.json_output:
                print(json.dumps(case.to_dict(), indent=2))
            else:
                _print_case(case)
            return

        if args.create:
            if not args.name or not args.goal:
                parser.error("--create requires --name and at least one --goal")
            case = manager.create_case(
                initiative_name=args.name,
                owner=args.owner,
                problem_statement=args.problem,
                goals=args.goal,
                non_goals=args.non_goal,
                risk_lane=args.risk_lane,
                phi_classification=args.phi,
            )
            if args.json_output:
                print(json.dumps(case.to_dict(), indent=2))
            else:
                _print_case(case)
            return

        inputs = {}
        if args.artifacts:
            with open(args.artifacts, "r", encoding="utf-8") as f:
                inputs = json.load(f)
        if args.approve:
            inputs["user_approval"] = True
        result = manager.advance_case(args.advance, **inputs)
        if args.json_output:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            flag = " [APPROVAL NEEDED]" if result.needs_user_approval else ""
            print(f"{result.case_id}: {result.previous_overlay} -> {result.current_overlay} "
                  f"[{result.status}]{flag}")
            print(f"  {result.action_taken}")
            print(f"  Next: {result.next_action}")

    except (RefineryError, ValueError, TypeError, OSError) as e:
        if args.json_output:
            print(json.dumps({"error": str(e)}, indent=2))
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
