#!/usr/bin/env python3
# CUI // SP-CTI
"""Core domain schema models.

Findings, consensus results, proposals, ADRs, scorecards and target server
configuration. Findings and scorecard snapshots are immutable once captured
(frozen dataclasses); proposals and ADRs only ever change status-like
fields after creation.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from refinery.schemas.base import SchemaModel

RISK_LEVELS = ("low", "medium", "high", "critical")
EVIDENCE_TYPES = ("url", "quote", "spec_reference")
EVIDENCE_QUALITIES = ("A", "B", "C")
IMPACT_DIMENSIONS = ("reliability", "security", "devex", "performance")

CHANGE_CATEGORIES = (
    "security", "behavioral", "refactor", "dependency", "docs", "prompt_only",
)
PROPOSAL_STATUSES = (
    "draft", "triaged", "approved", "in_progress", "pr_open", "testing",
    "merged", "released", "rejected", "rolled_back",
)
ADR_STATUSES = ("proposed", "accepted", "superseded", "deprecated")
AUTONOMY_LEVELS = ("advisory", "pr_only", "auto_merge", "auto_release")


def risk_ordinal(level: str) -> int:
    """Position of a risk level in RISK_LEVELS (ValueError if unknown)."""
    return RISK_LEVELS.index(level)


def max_risk(levels) -> str:
    """Highest risk level among ``levels``."""
    return RISK_LEVELS[max(risk_ordinal(level) for level in levels)]


def _clamp(value: float, low: float = -1.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


# ---------------------------------------------------------------------------
# Findings
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Evidence(SchemaModel):
    """A single piece of supporting evidence."""

    type: str  # url, quote, spec_reference
    value: str
    quality: str = "B"  # A, B, C

    def __post_init__(self):
        if self.type not in EVIDENCE_TYPES:
            raise ValueError(f"Invalid evidence type '{self.type}'. Valid: {EVIDENCE_TYPES}")
        if self.quality not in EVIDENCE_QUALITIES:
            raise ValueError(f"Invalid evidence quality '{self.quality}'. Valid: {EVIDENCE_QUALITIES}")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.type, self.value)


@dataclass(frozen=True)
class ExpectedImpact(SchemaModel):
    """Four independent impact dimensions, each clamped to [-1, 1]."""

    reliability: float = 0.0
    security: float = 0.0
    devex: float = 0.0
    performance: float = 0.0

    def __post_init__(self):
        for name in IMPACT_DIMENSIONS:
            object.__setattr__(self, name, _clamp(getattr(self, name)))

    def magnitude(self) -> float:
        """Sum of absolute impact across all dimensions."""
        return sum(abs(getattr(self, name)) for name in IMPACT_DIMENSIONS)


@dataclass(frozen=True)
class Risk(SchemaModel):
    level: str = "low"
    notes: str = ""

    def __post_init__(self):
        if self.level not in RISK_LEVELS:
            raise ValueError(f"Invalid risk level '{self.level}'. Valid: {RISK_LEVELS}")


@dataclass(frozen=True)
class Finding(SchemaModel):
    """A single claim produced under one perspective."""

    claim: str
    recommendation: str
    expected_impact: ExpectedImpact = field(default_factory=ExpectedImpact)
    risk: Risk = field(default_factory=Risk)
    evidence: Tuple[Evidence, ...] = ()

    @property
    def text(self) -> str:
        return f"{self.claim} {self.recommendation}"

    @classmethod
    def from_dict(cls, data: dict) -> "Finding":
        return cls(
            claim=data["claim"],
            recommendation=data.get("recommendation", ""),
            expected_impact=ExpectedImpact.from_dict(data.get("expected_impact") or {}),
            risk=Risk.from_dict(data.get("risk") or {}),
            evidence=tuple(Evidence.from_dict(e) for e in data.get("evidence") or []),
        )


@dataclass
class ResearchFeed(SchemaModel):
    """One perspective's batch of findings with the batch confidence."""

    perspective: str
    confidence: float
    findings: List[Finding] = field(default_factory=list)
    target_server_id: str = ""
    feed_id: str = ""
    completed_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ResearchFeed":
        return cls(
            perspective=data["perspective"],
            confidence=float(data.get("confidence", 0.0)),
            findings=[Finding.from_dict(f) for f in data.get("findings") or []],
            target_server_id=data.get("target_server_id", ""),
            feed_id=data.get("feed_id", ""),
            completed_at=data.get("completed_at"),
        )


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------
@dataclass
class ConsensusFinding(SchemaModel):
    """Findings from distinct perspectives merged into one claim."""

    claim: str
    recommendation: str
    supporting_perspectives: List[str]
    agreement_score: float
    combined_confidence: float
    merged_impact: ExpectedImpact = field(default_factory=ExpectedImpact)
    merged_evidence: List[Evidence] = field(default_factory=list)
    risk_level: str = "low"

    @classmethod
    def from_dict(cls, data: dict) -> "ConsensusFinding":
        return cls(
            claim=data["claim"],
            recommendation=data.get("recommendation", ""),
            supporting_perspectives=list(data.get("supporting_perspectives") or []),
            agreement_score=float(data.get("agreement_score", 0.0)),
            combined_confidence=float(data.get("combined_confidence", 0.0)),
            merged_impact=ExpectedImpact.from_dict(data.get("merged_impact") or {}),
            merged_evidence=[Evidence.from_dict(e) for e in data.get("merged_evidence") or []],
            risk_level=data.get("risk_level", "low"),
        )


@dataclass
class ConsensusResult(SchemaModel):
    consensus_id: str
    target_server_id: str
    computed_at: str
    findings: List[ConsensusFinding] = field(default_factory=list)
    overall_agreement: float = 0.0
    perspectives_used: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "ConsensusResult":
        return cls(
            consensus_id=data["consensus_id"],
            target_server_id=data["target_server_id"],
            computed_at=data.get("computed_at", ""),
            findings=[ConsensusFinding.from_dict(f) for f in data.get("findings") or []],
            overall_agreement=float(data.get("overall_agreement", 0.0)),
            perspectives_used=list(data.get("perspectives_used") or []),
        )


# ---------------------------------------------------------------------------
# Scorecards
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ScorecardDimension(SchemaModel):
    name: str
    score: float
    is_primary: bool = False
    weight: float = 1.0


@dataclass(frozen=True)
class ScorecardSnapshot(SchemaModel):
    """Named quality dimensions captured at one point in time."""

    scorecard_id: str
    target_server_id: str
    captured_at: str
    dimensions: Tuple[ScorecardDimension, ...] = ()
    overall_score: float = 0.0

    def dimension(self, name: str) -> Optional[ScorecardDimension]:
        for dim in self.dimensions:
            if dim.name == name:
                return dim
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "ScorecardSnapshot":
        return cls(
            scorecard_id=data["scorecard_id"],
            target_server_id=data["target_server_id"],
            captured_at=data.get("captured_at", ""),
            dimensions=tuple(ScorecardDimension.from_dict(d) for d in data.get("dimensions") or []),
            overall_score=float(data.get("overall_score", 0.0)),
        )


# ---------------------------------------------------------------------------
# Proposals and decisions
# ---------------------------------------------------------------------------
@dataclass
class ImprovementProposal(SchemaModel):
    """A unit of proposed change to a target server."""

    proposal_id: str
    target_server_id: str
    title: str
    description: str = ""
    category: str = "behavioral"
    status: str = "draft"
    priority: int = 0
    risk_level: str = "low"
    estimated_loc_change: int = 0
    acceptance_criteria: List[str] = field(default_factory=list)
    consensus_finding_ref: str = ""
    adr_refs: List[str] = field(default_factory=list)
    scorecard_baseline: Optional[ScorecardSnapshot] = None
    scorecard_target: Optional[ScorecardSnapshot] = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if self.category not in CHANGE_CATEGORIES:
            raise ValueError(f"Invalid category '{self.category}'. Valid: {CHANGE_CATEGORIES}")
        if self.status not in PROPOSAL_STATUSES:
            raise ValueError(f"Invalid status '{self.status}'. Valid: {PROPOSAL_STATUSES}")
        if self.risk_level not in RISK_LEVELS:
            raise ValueError(f"Invalid risk level '{self.risk_level}'. Valid: {RISK_LEVELS}")

    @classmethod
    def from_dict(cls, data: dict) -> "ImprovementProposal":
        baseline = data.get("scorecard_baseline")
        target = data.get("scorecard_target")
        return cls(
            proposal_id=data["proposal_id"],
            target_server_id=data["target_server_id"],
            title=data["title"],
            description=data.get("description", ""),
            category=data.get("category", "behavioral"),
            status=data.get("status", "draft"),
            priority=int(data.get("priority", 0)),
            risk_level=data.get("risk_level", "low"),
            estimated_loc_change=int(data.get("estimated_loc_change", 0)),
            acceptance_criteria=list(data.get("acceptance_criteria") or []),
            consensus_finding_ref=data.get("consensus_finding_ref", ""),
            adr_refs=list(data.get("adr_refs") or []),
            scorecard_baseline=ScorecardSnapshot.from_dict(baseline) if baseline else None,
            scorecard_target=ScorecardSnapshot.from_dict(target) if target else None,
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )


@dataclass
class ArchitectureDecisionRecord(SchemaModel):
    """A binding decision and the conditions under which it may be reversed."""

    adr_id: str
    title: str
    decision: str
    confidence: float
    cooldown_until: str
    min_confidence_margin: float = 0.25
    min_consecutive_cycles: int = 2
    status: str = "accepted"
    context: str = ""
    rationale: str = ""
    consequences: List[str] = field(default_factory=list)
    alternatives_considered: List[str] = field(default_factory=list)
    related_proposals: List[str] = field(default_factory=list)
    superseded_by: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if self.status not in ADR_STATUSES:
            raise ValueError(f"Invalid ADR status '{self.status}'. Valid: {ADR_STATUSES}")

    @property
    def is_active(self) -> bool:
        return self.status == "accepted"


@dataclass
class TargetServerConfig(SchemaModel):
    """Per-target overrides for budgets, categories and scorecard weights."""

    server_id: str
    name: str = ""
    repo_url: str = ""
    autonomy_level: str = "pr_only"
    change_budget_per_window: Optional[int] = None
    window_hours: Optional[int] = None
    allowed_categories: List[str] = field(default_factory=list)
    scorecard_weights: Dict[str, float] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    def __post_init__(self):
        if self.autonomy_level not in AUTONOMY_LEVELS:
            raise ValueError(
                f"Invalid autonomy level '{self.autonomy_level}'. Valid: {AUTONOMY_LEVELS}"
            )
