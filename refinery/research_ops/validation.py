#!/usr/bin/env python3
# CUI // SP-CTI
"""Deterministic research case validator.

Pure logic, no I/O: the same case always yields the same checks, only
``validated_at`` differs between runs.

Checks:
    structure   case_id_format, intake_complete, phi_policy, risk_lane,
                goals_defined (always)
    pipeline    sources_present (warning), synthesis_complete,
                reviews_complete, decision_recorded, proposal_frozen,
                implementation_brief, evaluation_complete, each enabled once
                the case has reached the overlay step that produces it
    budget      change_budget (always; error only when over budget)

A case passes when no error-severity check failed.

Usage:
    python -m refinery.research_ops.validation --case-id RC-20260101-example --json
"""

import argparse
import json
import re
import sys
from pathlib import Path
from typing import Callable, List, Tuple

from refinery.compat.datetime_utils import utc_now_iso
from refinery.schemas.research_ops import (
    REVIEW_PERSPECTIVES,
    RISK_LANES,
    ResearchCase,
    ValidationCheck,
    ValidationResult,
)

CASE_ID_PATTERN = re.compile(r"^RC-\d{8}-.+$")
EXTERNAL_SOURCE_MARKERS = ("chatgpt", "gemini", "grok", "external")


def _check_case_id(case: ResearchCase) -> ValidationCheck:
    valid = bool(CASE_ID_PATTERN.match(case.case_id))
    return ValidationCheck(
        name="case_id_format",
        passed=valid,
        message=("Case ID follows RC-YYYYMMDD-slug format." if valid
                 else f"Invalid case ID format: {case.case_id}"),
        severity="error",
    )


def _check_intake(case: ResearchCase) -> ValidationCheck:
    present = case.intake is not None and bool(case.intake.target_system)
    return ValidationCheck(
        name="intake_complete",
        passed=present,
        message="Intake artifact present." if present else "Missing intake artifact or target system.",
        severity="error",
    )


def has_external_sources(case: ResearchCase) -> bool:
    return any(
        marker in key.lower()
        for key in case.sources
        for marker in EXTERNAL_SOURCE_MARKERS
    )


def _check_phi(case: ResearchCase) -> ValidationCheck:
    if case.phi_classification == "none":
        return ValidationCheck(
            name="phi_policy",
            passed=True,
            message="PHI classification: none. External LLM ingestion allowed.",
            severity="info",
        )
    if has_external_sources(case):
        return ValidationCheck(
            name="phi_policy",
            passed=False,
            message=(f'PHI classification is "{case.phi_classification}" but external LLM '
                     "sources were ingested. External sources must not be used when PHI is involved."),
            severity="error",
        )
    return ValidationCheck(
        name="phi_policy",
        passed=True,
        message=f"PHI classification: {case.phi_classification}. No external LLM sources detected.",
        severity="info",
    )


def _check_risk_lane(case: ResearchCase) -> ValidationCheck:
    valid = case.risk_lane in RISK_LANES
    return ValidationCheck(
        name="risk_lane",
        passed=valid,
        message=f"Risk lane: {case.risk_lane}" if valid else f"Invalid risk lane: {case.risk_lane!r}",
        severity="error",
    )


def _check_goals(case: ResearchCase) -> ValidationCheck:
    count = len(case.goals)
    return ValidationCheck(
        name="goals_defined",
        passed=count > 0,
        message=f"{count} goal(s) defined." if count else "No goals defined.",
        severity="error",
    )


def _check_sources(case: ResearchCase) -> ValidationCheck:
    count = len(case.sources)
    return ValidationCheck(
        name="sources_present",
        passed=count > 0,
        message=f"{count} source(s) ingested." if count else "No sources ingested yet.",
        severity="warning",
    )


def _check_synthesis(case: ResearchCase) -> ValidationCheck:
    present = bool(case.synthesis)
    return ValidationCheck(
        name="synthesis_complete",
        passed=present,
        message="Synthesis artifact present." if present else "Synthesis not yet generated.",
        severity="error",
    )


def _check_reviews(case: ResearchCase) -> ValidationCheck:
    missing = [p for p in REVIEW_PERSPECTIVES if p not in case.reviews]
    done = len(REVIEW_PERSPECTIVES) - len(missing)
    return ValidationCheck(
        name="reviews_complete",
        passed=not missing,
        message=(f"All {len(REVIEW_PERSPECTIVES)} reviews complete." if not missing
                 else f"{done}/{len(REVIEW_PERSPECTIVES)} reviews. Missing: {', '.join(missing)}."),
        severity="error",
    )


def _check_decision(case: ResearchCase) -> ValidationCheck:
    return ValidationCheck(
        name="decision_recorded",
        passed=case.decision is not None,
        message=(f"Decision: {case.decision.outcome}" if case.decision is not None
                 else "No decision recorded."),
        severity="error",
    )


def _check_proposal_frozen(case: ResearchCase) -> ValidationCheck:
    proposal = case.proposal
    if proposal is None:
        return ValidationCheck("proposal_frozen", False, "No proposal to freeze.", "error")
    return ValidationCheck(
        name="proposal_frozen",
        passed=proposal.frozen,
        message=(f"Proposal frozen at {proposal.frozen_at}." if proposal.frozen
                 else "Proposal not yet frozen. Awaiting alignment gate approval."),
        severity="error",
    )


def _check_brief(case: ResearchCase) -> ValidationCheck:
    brief = case.brief
    if brief is None:
        return ValidationCheck("implementation_brief", False, "No implementation brief.", "error")
    has_criteria = bool(brief.acceptance_criteria)
    has_tests = bool(brief.test_requirements)
    has_rollback = bool(brief.rollback_plan)
    complete = has_criteria and has_tests and has_rollback
    if complete:
        message = (f"Brief complete: {len(brief.acceptance_criteria)} ACs, "
                   f"{len(brief.test_requirements)} tests, rollback plan present.")
    else:
        message = (f"Brief incomplete: ACs={has_criteria}, tests={has_tests}, "
                   f"rollback={has_rollback}.")
    return ValidationCheck("implementation_brief", complete, message, "error")


def _check_evaluation(case: ResearchCase) -> ValidationCheck:
    report = case.evaluation
    if report is None:
        return ValidationCheck("evaluation_complete", False, "No evaluation report.", "error")
    if report.overall_pass:
        return ValidationCheck("evaluation_complete", True, "Evaluation passed.", "error")
    policy_failures = sum(1 for c in report.policy_checks if not c.passed)
    stability_failures = sum(1 for c in report.stability_checks if not c.passed)
    return ValidationCheck(
        name="evaluation_complete",
        passed=False,
        message=(f"Evaluation FAILED: {policy_failures} policy failure(s), "
                 f"{stability_failures} stability failure(s)."),
        severity="error",
    )


def _check_change_budget(case: ResearchCase) -> ValidationCheck:
    budget = case.change_budget
    within = budget.iterations_used <= budget.max_iterations
    if within:
        message = (f"Budget: {budget.iterations_used}/{budget.max_iterations} iterations, "
                   f"{budget.prs_used}/{budget.max_prs} PRs.")
    else:
        message = f"OVER BUDGET: {budget.iterations_used}/{budget.max_iterations} iterations used."
    return ValidationCheck("change_budget", within, message, "info" if within else "error")


STRUCTURE_CHECKS: Tuple[Callable[[ResearchCase], ValidationCheck], ...] = (
    _check_case_id,
    _check_intake,
    _check_phi,
    _check_risk_lane,
    _check_goals,
)

# (minimum overlay_index, check)
PIPELINE_CHECKS: Tuple[Tuple[int, Callable[[ResearchCase], ValidationCheck]], ...] = (
    (1, _check_sources),
    (2, _check_synthesis),
    (3, _check_reviews),
    (4, _check_decision),
    (5, _check_proposal_frozen),
    (6, _check_brief),
    (7, _check_evaluation),
)


def validate_case(case: ResearchCase) -> ValidationResult:
    """Run every applicable check against ``case``."""
    checks: List[ValidationCheck] = [check(case) for check in STRUCTURE_CHECKS]
    checks.extend(check(case) for min_index, check in PIPELINE_CHECKS
                  if case.overlay_index >= min_index)
    checks.append(_check_change_budget(case))

    passed = all(c.passed or c.severity != "error" for c in checks)
    return ValidationResult(
        case_id=case.case_id,
        passed=passed,
        checks=checks,
        validated_at=utc_now_iso(),
    )


def _print_human(result: ValidationResult):
    state = "PASS" if result.passed else "FAIL"
    print(f"Validation [{state}] {result.case_id}")
    for c in result.checks:
        mark = "ok  " if c.passed else "FAIL"
        print(f"  [{mark}] {c.name:<22} ({c.severity}) {c.message}")


def main():
    parser = argparse.ArgumentParser(description="Validate a research case")
    parser.add_argument("--case-id", required=True, help="Research case id")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.database import RefineryDB

    case = RefineryDB(args.db_path).get_case(args.case_id)
    if case is None:
        parser.error(f"Research case '{args.case_id}' not found")

    result = validate_case(case)
    if args.json_output:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        _print_human(result)
    sys.exit(0 if result.passed else 1)


if __name__ == "__main__":
    main()
