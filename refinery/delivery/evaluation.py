#!/usr/bin/env python3
# CUI // SP-CTI
"""Test run recording and acceptance evaluation.

record_test_run() stores one CI suite result with its raw output (and any
failures) as ci_log artifacts. evaluate_test_results() decides whether a set
of runs meets the acceptance bar:

    - every suite passed
    - overall pass rate of at least 95%
    - no primary scorecard dimension below the stored baseline

A lower overall scorecard without a primary regression, and average
coverage under 70%, are warnings only. to_evaluation_report() turns the
result into the EvaluationReport a research case expects at its evaluate
step.

Usage:
    python -m refinery.delivery.evaluation --record suite.json --pr-id pr-7 --plan-id <plan_id>
    python -m refinery.delivery.evaluation --evaluate <plan_id> --server-id srv-1 \\
        --scorecard-file dimensions.json --json
"""

import argparse
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from refinery.compat.datetime_utils import utc_now_iso
from refinery.decision.scorecard import ScorecardComparison, capture_scorecard, compare_scorecards
from refinery.resilience.errors import RefineryError
from refinery.schemas.base import SchemaModel
from refinery.schemas.core import ScorecardDimension, ScorecardSnapshot
from refinery.schemas.delivery import TestRunRecord, TestSuiteResult
from refinery.schemas.research_ops import (
    EvaluationCheck,
    EvaluationReport,
    EvaluationRisk,
    SuiteResult,
)

logger = logging.getLogger("refinery.delivery.evaluation")

MIN_PASS_RATE = 0.95
COVERAGE_TARGET = 70.0


@dataclass
class EvalResult(SchemaModel):
    test_run: TestRunRecord
    scorecard_comparison: Optional[ScorecardComparison] = None
    meets_acceptance_criteria: bool = False
    blocking_failures: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    checks: List[EvaluationCheck] = field(default_factory=list)
    suites: List[SuiteResult] = field(default_factory=list)


def record_test_run(db, audit, pr_id: str, plan_id: str, suite: TestSuiteResult,
                    scorecard_after: Optional[ScorecardSnapshot] = None) -> TestRunRecord:
    """Persist ``suite`` as a TestRunRecord and archive its output."""
    run = TestRunRecord(
        run_id=str(uuid.uuid4()),
        pr_id=pr_id,
        plan_id=plan_id,
        test_suite=suite.suite_name,
        passed=suite.passed,
        total_tests=suite.total,
        passed_tests=suite.passed_count,
        failed_tests=suite.failed_count,
        skipped_tests=suite.skipped_count,
        coverage_percent=suite.coverage_percent,
        duration_ms=suite.duration_ms,
        scorecard_after=scorecard_after,
        created_at=utc_now_iso(),
    )
    db.insert_test_run(run)

    db.store_artifact(
        f"test-runs/{run.run_id}/output", suite.output,
        content_type="text/plain", category="ci_log",
        tags={"pr_id": pr_id, "suite": suite.suite_name, "passed": str(suite.passed).lower()},
    )
    if suite.failures:
        db.store_artifact(
            f"test-runs/{run.run_id}/failures",
            json.dumps([f.to_dict() for f in suite.failures], indent=2),
            content_type="application/json", category="ci_log",
            tags={"pr_id": pr_id, "failure_count": str(len(suite.failures))},
        )

    audit.record(
        "delivery.tests_run", "test_agent", "test_run", run.run_id,
        {
            "suite": suite.suite_name,
            "passed": suite.passed,
            "total": suite.total,
            "failed": suite.failed_count,
            "coverage": suite.coverage_percent,
            "duration_ms": suite.duration_ms,
        },
    )
    logger.info("Recorded test run %s (%s: %d/%d passed)",
                run.run_id, suite.suite_name, suite.passed_count, suite.total)
    return run


def evaluate_test_results(db, audit, runs: Sequence[TestRunRecord], target_server_id: str,
                          scorecard_dimensions: Optional[List[ScorecardDimension]] = None
                          ) -> EvalResult:
    """Check ``runs`` (and an optional fresh scorecard) against the acceptance bar.

    The baseline is the latest stored scorecard for the server, read before
    the new one is captured.
    """
    blocking: List[str] = []
    warnings: List[str] = []
    checks: List[EvaluationCheck] = []

    failed_suites = [r.test_suite for r in runs if not r.passed]
    if failed_suites:
        blocking.append(f"Test suites failed: {', '.join(failed_suites)}")
    checks.append(EvaluationCheck("all_suites_passed", not failed_suites,
                                  ", ".join(failed_suites)))

    total = sum(r.total_tests for r in runs)
    passed = sum(r.passed_tests for r in runs)
    pass_rate = passed / total if total > 0 else 0.0
    rate_ok = pass_rate >= MIN_PASS_RATE
    if not rate_ok:
        blocking.append(f"Overall pass rate {pass_rate * 100:.1f}% below "
                        f"{MIN_PASS_RATE * 100:.0f}% threshold")
    checks.append(EvaluationCheck("pass_rate", rate_ok, f"{pass_rate * 100:.1f}%"))

    comparison = None
    if scorecard_dimensions:
        baseline = db.get_latest_scorecard(target_server_id)
        current = capture_scorecard(db, audit, target_server_id, scorecard_dimensions)
        if baseline is not None:
            comparison = compare_scorecards(baseline, current)
            if not comparison.monotonic_improvement:
                if comparison.any_primary_degraded:
                    blocking.append("Primary scorecard metrics degraded: "
                                    "monotonic improvement violated")
                else:
                    warnings.append("Overall scorecard score decreased but no primary "
                                    "metrics degraded")
            checks.append(EvaluationCheck("scorecard_primary_metrics",
                                          not comparison.any_primary_degraded,
                                          f"overall delta {comparison.overall_delta:+.4f}"))

    coverages = [r.coverage_percent for r in runs if r.coverage_percent is not None]
    if coverages:
        average = sum(coverages) / len(coverages)
        if average < COVERAGE_TARGET:
            warnings.append(f"Average test coverage {average:.1f}% below "
                            f"{COVERAGE_TARGET:.0f}% target")

    latest = runs[-1] if runs else TestRunRecord(
        run_id=str(uuid.uuid4()), pr_id="", plan_id="", test_suite="none",
        passed=False, created_at=utc_now_iso(),
    )
    result = EvalResult(
        test_run=latest,
        scorecard_comparison=comparison,
        meets_acceptance_criteria=not blocking,
        blocking_failures=blocking,
        warnings=warnings,
        checks=checks,
        suites=[
            SuiteResult(suite=r.test_suite, passed=r.passed, total=r.total_tests,
                        passed_count=r.passed_tests, failed_count=r.failed_tests)
            for r in runs
        ],
    )
    logger.info("Evaluation for %s: %s (%d blocking, %d warnings)", target_server_id,
                "PASS" if result.meets_acceptance_criteria else "FAIL",
                len(blocking), len(warnings))
    return result


def to_evaluation_report(result: EvalResult) -> EvaluationReport:
    return EvaluationReport(
        overall_pass=result.meets_acceptance_criteria,
        test_results=list(result.suites),
        policy_checks=list(result.checks),
        risks=[EvaluationRisk(risk=w, severity="low") for w in result.warnings],
        evaluated_at=utc_now_iso(),
    )


def format_eval_report(result: EvalResult) -> str:
    run = result.test_run
    status = "PASS" if result.meets_acceptance_criteria else "FAIL"
    out = f"# Evaluation Report [{status}]\n\n"

    out += "## Test Results\n"
    out += f"- **Suite**: {run.test_suite}\n"
    out += f"- **Total Tests**: {run.total_tests}\n"
    out += f"- **Passed**: {run.passed_tests}\n"
    out += f"- **Failed**: {run.failed_tests}\n"
    out += f"- **Skipped**: {run.skipped_tests}\n"
    if run.coverage_percent is not None:
        out += f"- **Coverage**: {run.coverage_percent:.1f}%\n"
    out += f"- **Duration**: {run.duration_ms}ms\n\n"

    sc = result.scorecard_comparison
    if sc is not None:
        out += "## Scorecard Comparison\n"
        out += f"- **Overall Delta**: {sc.overall_delta * 100:+.2f}%\n"
        out += f"- **Monotonic Improvement**: {'Yes' if sc.monotonic_improvement else 'No'}\n\n"
        for delta in sc.dimension_deltas:
            primary = " (PRIMARY)" if delta.is_primary else ""
            out += (f"  - {delta.name}{primary}: {delta.baseline_score * 100:.1f}% -> "
                    f"{delta.current_score * 100:.1f}% ({delta.delta * 100:+.2f}%)\n")
        out += "\n"

    if result.blocking_failures:
        out += "## Blocking Failures\n"
        for failure in result.blocking_failures:
            out += f"- {failure}\n"
        out += "\n"

    if result.warnings:
        out += "## Warnings\n"
        for warning in result.warnings:
            out += f"- {warning}\n"

    return out


def main():
    parser = argparse.ArgumentParser(description="Record test runs and evaluate acceptance")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--record", type=Path, metavar="SUITE_JSON",
                        help="Record a test suite result from a JSON file")
    action.add_argument("--evaluate", metavar="PLAN_ID", help="Evaluate the runs of a delivery plan")
    parser.add_argument("--pr-id", default="", help="Pull request id (with --record)")
    parser.add_argument("--plan-id", default="", help="Delivery plan id (with --record)")
    parser.add_argument("--server-id", help="Target server (with --evaluate)")
    parser.add_argument("--scorecard-file", type=Path,
                        help="JSON list of scorecard dimensions to capture (with --evaluate)")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB

    try:
        db = RefineryDB(args.db_path)
        audit = AuditLog(args.db_path)

        if args.record:
            with open(args.record, "r", encoding="utf-8") as f:
                suite = TestSuiteResult.from_dict(json.load(f))
            run = record_test_run(db, audit, args.pr_id, args.plan_id, suite)
            if args.json_output:
                print(json.dumps(run.to_dict(), indent=2))
            else:
                print(f"Recorded run {run.run_id}: {run.test_suite} "
                      f"{run.passed_tests}/{run.total_tests} passed")
            return

        if not args.server_id:
            raise ValueError("--server-id is required with --evaluate")
        dimensions = None
        if args.scorecard_file:
            with open(args.scorecard_file, "r", encoding="utf-8") as f:
                dimensions = [ScorecardDimension.from_dict(d) for d in json.load(f)]
        runs = db.list_test_runs(plan_id=args.evaluate)
        result = evaluate_test_results(db, audit, runs, args.server_id, dimensions)
        if args.json_output:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(format_eval_report(result))

    except (OSError, ValueError, KeyError, RefineryError) as e:
        if args.json_output:
            print(json.dumps({"error": str(e)}, indent=2))
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
