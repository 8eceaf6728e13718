#!/usr/bin/env python3
# CUI // SP-CTI
"""Delivery schema models: plans, releases, test runs and governance approvals."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from refinery.schemas.base import SchemaModel
from refinery.schemas.core import ScorecardSnapshot

RELEASE_STATUSES = ("planning", "candidate", "staging", "canary", "released", "rolled_back")
PLAN_STATUSES = ("draft", "approved", "in_progress", "completed", "aborted")
GOVERNANCE_TARGET_TYPES = ("proposal", "plan", "release", "adr_override")


@dataclass
class DeliveryPlan(SchemaModel):
    """An ordered set of approved proposals delivered together."""

    plan_id: str
    target_server_id: str
    proposals: List[str] = field(default_factory=list)
    acceptance_criteria: Dict[str, List[str]] = field(default_factory=dict)
    test_strategy: str = ""
    rollback_plan: str = ""
    estimated_duration_hours: float = 0.0
    status: str = "draft"
    created_at: str = ""

    def __post_init__(self):
        if self.status not in PLAN_STATUSES:
            raise ValueError(f"Invalid plan status '{self.status}'. Valid: {PLAN_STATUSES}")


@dataclass
class ReleaseRecord(SchemaModel):
    release_id: str
    target_server_id: str
    version: str
    plan_id: str
    previous_version: Optional[str] = None
    pr_ids: List[str] = field(default_factory=list)
    proposal_ids: List[str] = field(default_factory=list)
    changelog: str = ""
    status: str = "planning"
    scorecard_at_release: Optional[ScorecardSnapshot] = None
    created_at: str = ""
    published_at: Optional[str] = None
    rolled_back_at: Optional[str] = None
    rollback_reason: Optional[str] = None

    def __post_init__(self):
        if self.status not in RELEASE_STATUSES:
            raise ValueError(f"Invalid release status '{self.status}'. Valid: {RELEASE_STATUSES}")

    @classmethod
    def from_dict(cls, data: dict) -> "ReleaseRecord":
        scorecard = data.get("scorecard_at_release")
        return cls(
            release_id=data["release_id"],
            target_server_id=data["target_server_id"],
            version=data["version"],
            plan_id=data["plan_id"],
            previous_version=data.get("previous_version"),
            pr_ids=list(data.get("pr_ids") or []),
            proposal_ids=list(data.get("proposal_ids") or []),
            changelog=data.get("changelog", ""),
            status=data.get("status", "planning"),
            scorecard_at_release=ScorecardSnapshot.from_dict(scorecard) if scorecard else None,
            created_at=data.get("created_at", ""),
            published_at=data.get("published_at"),
            rolled_back_at=data.get("rolled_back_at"),
            rollback_reason=data.get("rollback_reason"),
        )


@dataclass
class TransitionResult(SchemaModel):
    """Outcome of a lifecycle transition attempt. Refusals mutate nothing."""

    success: bool
    message: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    allowed: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Test runs
# ---------------------------------------------------------------------------
@dataclass
class TestFailure(SchemaModel):
    test_name: str
    error_message: str = ""
    stack_trace: str = ""


@dataclass
class TestSuiteResult(SchemaModel):
    """Raw result of one test suite execution, as reported by CI."""

    suite_name: str
    passed: bool
    total: int = 0
    passed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    coverage_percent: Optional[float] = None
    duration_ms: int = 0
    output: str = ""
    failures: List[TestFailure] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "TestSuiteResult":
        return cls(
            suite_name=data["suite_name"],
            passed=bool(data["passed"]),
            total=int(data.get("total", 0)),
            passed_count=int(data.get("passed_count", 0)),
            failed_count=int(data.get("failed_count", 0)),
            skipped_count=int(data.get("skipped_count", 0)),
            coverage_percent=data.get("coverage_percent"),
            duration_ms=int(data.get("duration_ms", 0)),
            output=data.get("output", ""),
            failures=[TestFailure.from_dict(f) for f in data.get("failures") or []],
        )


@dataclass
class TestRunRecord(SchemaModel):
    run_id: str
    pr_id: str
    plan_id: str
    test_suite: str
    passed: bool
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    coverage_percent: Optional[float] = None
    duration_ms: int = 0
    scorecard_after: Optional[ScorecardSnapshot] = None
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "TestRunRecord":
        scorecard = data.get("scorecard_after")
        return cls(
            run_id=data["run_id"],
            pr_id=data["pr_id"],
            plan_id=data["plan_id"],
            test_suite=data["test_suite"],
            passed=bool(data["passed"]),
            total_tests=int(data.get("total_tests", 0)),
            passed_tests=int(data.get("passed_tests", 0)),
            failed_tests=int(data.get("failed_tests", 0)),
            skipped_tests=int(data.get("skipped_tests", 0)),
            coverage_percent=data.get("coverage_percent"),
            duration_ms=int(data.get("duration_ms", 0)),
            scorecard_after=ScorecardSnapshot.from_dict(scorecard) if scorecard else None,
            created_at=data.get("created_at", ""),
        )


# ---------------------------------------------------------------------------
# Governance
# ---------------------------------------------------------------------------
def _check_target_type(target_type: str):
    if target_type not in GOVERNANCE_TARGET_TYPES:
        raise ValueError(
            f"Invalid governance target type '{target_type}'. Valid: {GOVERNANCE_TARGET_TYPES}"
        )


@dataclass
class GovernanceApproval(SchemaModel):
    """A human sign-off recorded against a proposal, plan, release or ADR override."""

    approval_id: str
    target_type: str
    target_id: str
    approved_by: str
    risk_acknowledged: bool = False
    rollback_plan_acknowledged: bool = False
    notes: str = ""
    created_at: str = ""

    def __post_init__(self):
        _check_target_type(self.target_type)


@dataclass
class ApprovalRequest(SchemaModel):
    target_type: str
    target_id: str
    risk_level: str
    summary: str
    rollback_plan: str
    changes_description: str

    def __post_init__(self):
        _check_target_type(self.target_type)


@dataclass
class GateResult(SchemaModel):
    allowed: bool
    requires_approval: bool
    has_approval: bool
    reason: str
