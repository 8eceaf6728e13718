#!/usr/bin/env python3
# CUI // SP-CTI
"""Research Case schema models.

A research case carries one improvement initiative through the overlay
pipeline:

    intake -> synthesize -> review -> decide -> freeze -> implement
           -> evaluate -> release

Each overlay step produces one typed artifact. Status, current_overlay and
overlay_index are kept in agreement through OVERLAY_TO_STATUS.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from refinery.schemas.base import SchemaModel

PHI_CLASSIFICATIONS = ("none", "internal_only", "restricted")
RISK_LANES = ("low", "medium", "high")
TARGET_CONSUMERS = ("refinery", "software_agent", "both")

OVERLAY_PIPELINE = (
    "intake", "synthesize", "review", "decide", "freeze",
    "implement", "evaluate", "release",
)

OVERLAY_TO_STATUS = {
    "intake": "intake",
    "synthesize": "synthesizing",
    "review": "reviewing",
    "decide": "deciding",
    "freeze": "frozen",
    "implement": "implementing",
    "evaluate": "evaluating",
    "release": "releasing",
}

TERMINAL_STATUSES = ("completed", "rejected", "deferred")
CASE_STATUSES = tuple(OVERLAY_TO_STATUS.values()) + TERMINAL_STATUSES

REVIEW_PERSPECTIVES = (
    "architecture", "security_compliance", "ops_reliability",
    "cost_performance", "adversarial_skeptic",
)
REVIEW_VERDICTS = ("approve", "approve_with_conditions", "reject", "defer")
DECISION_OUTCOMES = ("accepted", "rejected", "deferred")
CHECK_SEVERITIES = ("error", "warning", "info")


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------
@dataclass
class IntakeArtifact(SchemaModel):
    target_system: str
    constraints: List[str] = field(default_factory=list)
    prior_art: List[str] = field(default_factory=list)
    success_criteria: List[str] = field(default_factory=list)


@dataclass
class EvidenceEntry(SchemaModel):
    claim: str
    evidence_for: List[str] = field(default_factory=list)
    evidence_against: List[str] = field(default_factory=list)
    confidence: float = 0.0
    source_refs: List[str] = field(default_factory=list)


@dataclass
class ReviewArtifact(SchemaModel):
    perspective: str
    verdict: str
    confidence: float = 0.0
    required_changes: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)
    reviewed_at: str = ""

    def __post_init__(self):
        if self.perspective not in REVIEW_PERSPECTIVES:
            raise ValueError(
                f"Invalid review perspective '{self.perspective}'. Valid: {REVIEW_PERSPECTIVES}"
            )
        if self.verdict not in REVIEW_VERDICTS:
            raise ValueError(f"Invalid verdict '{self.verdict}'. Valid: {REVIEW_VERDICTS}")


@dataclass
class DecisionArtifact(SchemaModel):
    outcome: str
    rationale: str = ""
    not_adopted: List[str] = field(default_factory=list)
    conditions: List[str] = field(default_factory=list)
    decided_at: str = ""

    def __post_init__(self):
        if self.outcome not in DECISION_OUTCOMES:
            raise ValueError(f"Invalid outcome '{self.outcome}'. Valid: {DECISION_OUTCOMES}")


@dataclass
class ProposedChange(SchemaModel):
    component: str
    description: str = ""
    estimated_loc: int = 0
    risk_level: str = "low"


@dataclass
class ChangeProposal(SchemaModel):
    title: str
    scope: List[str] = field(default_factory=list)
    out_of_scope: List[str] = field(default_factory=list)
    changes: List[ProposedChange] = field(default_factory=list)
    frozen: bool = False
    frozen_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeProposal":
        return cls(
            title=data["title"],
            scope=list(data.get("scope") or []),
            out_of_scope=list(data.get("out_of_scope") or []),
            changes=[ProposedChange.from_dict(c) for c in data.get("changes") or []],
            frozen=bool(data.get("frozen", False)),
            frozen_at=data.get("frozen_at"),
        )


@dataclass
class ImplementationBrief(SchemaModel):
    acceptance_criteria: List[str] = field(default_factory=list)
    test_requirements: List[str] = field(default_factory=list)
    rollback_plan: str = ""
    rollout_plan: str = ""
    non_functional_requirements: List[str] = field(default_factory=list)
    telemetry_requirements: List[str] = field(default_factory=list)


@dataclass
class SuiteResult(SchemaModel):
    suite: str
    passed: bool
    total: int = 0
    passed_count: int = 0
    failed_count: int = 0


@dataclass
class EvaluationCheck(SchemaModel):
    check: str
    passed: bool
    notes: str = ""


@dataclass
class EvaluationRisk(SchemaModel):
    risk: str
    severity: str = "low"
    mitigation: str = ""


@dataclass
class EvaluationReport(SchemaModel):
    overall_pass: bool
    test_results: List[SuiteResult] = field(default_factory=list)
    policy_checks: List[EvaluationCheck] = field(default_factory=list)
    stability_checks: List[EvaluationCheck] = field(default_factory=list)
    risks: List[EvaluationRisk] = field(default_factory=list)
    evaluated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "EvaluationReport":
        return cls(
            overall_pass=bool(data.get("overall_pass", False)),
            test_results=[SuiteResult.from_dict(t) for t in data.get("test_results") or []],
            policy_checks=[EvaluationCheck.from_dict(c) for c in data.get("policy_checks") or []],
            stability_checks=[
                EvaluationCheck.from_dict(c) for c in data.get("stability_checks") or []
            ],
            risks=[EvaluationRisk.from_dict(r) for r in data.get("risks") or []],
            evaluated_at=data.get("evaluated_at", ""),
        )


@dataclass
class ChangeBudget(SchemaModel):
    max_prs: int
    max_iterations: int
    prs_used: int = 0
    iterations_used: int = 0


# ---------------------------------------------------------------------------
# The case
# ---------------------------------------------------------------------------
@dataclass
class ResearchCase(SchemaModel):
    """The durable, auditable unit tracking one improvement initiative."""

    case_id: str
    initiative_name: str
    owner: str
    problem_statement: str
    goals: List[str]
    risk_lane: str
    change_budget: ChangeBudget
    non_goals: List[str] = field(default_factory=list)
    phi_classification: str = "none"
    target_consumer: str = "both"

    status: str = "intake"
    current_overlay: str = "intake"
    overlay_index: int = 0

    intake: Optional[IntakeArtifact] = None
    sources: Dict[str, str] = field(default_factory=dict)
    synthesis: Optional[str] = None
    evidence_matrix: Optional[List[EvidenceEntry]] = None
    reviews: Dict[str, ReviewArtifact] = field(default_factory=dict)
    decision: Optional[DecisionArtifact] = None
    proposal: Optional[ChangeProposal] = None
    brief: Optional[ImplementationBrief] = None
    evaluation: Optional[EvaluationReport] = None
    release_notes: Optional[str] = None

    consensus_id: Optional[str] = None
    delivery_plan_id: Optional[str] = None
    pr_ids: List[str] = field(default_factory=list)
    release_id: Optional[str] = None
    deliberation_session_id: Optional[str] = None
    scorecard_ids: List[str] = field(default_factory=list)

    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchCase":
        def _opt(key, model):
            value = data.get(key)
            return model.from_dict(value) if value else None

        matrix = data.get("evidence_matrix")
        return cls(
            case_id=data["case_id"],
            initiative_name=data["initiative_name"],
            owner=data.get("owner", ""),
            problem_statement=data.get("problem_statement", ""),
            goals=list(data.get("goals") or []),
            risk_lane=data.get("risk_lane", ""),
            change_budget=ChangeBudget.from_dict(data["change_budget"]),
            non_goals=list(data.get("non_goals") or []),
            phi_classification=data.get("phi_classification", "none"),
            target_consumer=data.get("target_consumer", "both"),
            status=data.get("status", "intake"),
            current_overlay=data.get("current_overlay", "intake"),
            overlay_index=int(data.get("overlay_index", 0)),
            intake=_opt("intake", IntakeArtifact),
            sources=dict(data.get("sources") or {}),
            synthesis=data.get("synthesis"),
            evidence_matrix=[EvidenceEntry.from_dict(e) for e in matrix] if matrix else None,
            reviews={
                name: ReviewArtifact.from_dict(review)
                for name, review in (data.get("reviews") or {}).items()
            },
            decision=_opt("decision", DecisionArtifact),
            proposal=_opt("proposal", ChangeProposal),
            brief=_opt("brief", ImplementationBrief),
            evaluation=_opt("evaluation", EvaluationReport),
            release_notes=data.get("release_notes"),
            consensus_id=data.get("consensus_id"),
            delivery_plan_id=data.get("delivery_plan_id"),
            pr_ids=list(data.get("pr_ids") or []),
            release_id=data.get("release_id"),
            deliberation_session_id=data.get("deliberation_session_id"),
            scorecard_ids=list(data.get("scorecard_ids") or []),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


# ---------------------------------------------------------------------------
# Validation / advancement results
# ---------------------------------------------------------------------------
@dataclass
class ValidationCheck(SchemaModel):
    name: str
    passed: bool
    message: str
    severity: str  # error, warning, info


@dataclass
class ValidationResult(SchemaModel):
    case_id: str
    passed: bool
    checks: List[ValidationCheck] = field(default_factory=list)
    validated_at: str = ""

    @property
    def failed_errors(self) -> List[ValidationCheck]:
        return [c for c in self.checks if c.severity == "error" and not c.passed]


@dataclass
class AdvanceResult(SchemaModel):
    case_id: str
    previous_overlay: str
    current_overlay: str
    status: str
    action_taken: str
    needs_user_approval: bool = False
    next_action: str = ""
