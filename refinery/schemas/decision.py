#!/usr/bin/env python3
# CUI // SP-CTI
"""Decision Plane result models.

Pure computed results (flip decisions, oscillation checks, triage output)
plus the persisted policy rule shape. None of the computed results are
stored; they are returned fully populated so a blocked outcome is never
unexplained.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from refinery.schemas.base import SchemaModel

POLICY_RULE_CATEGORIES = ("scope", "budget", "risk_tier", "anti_oscillation", "autonomy")
POLICY_ACTIONS = ("allow", "deny", "escalate", "require_approval")


@dataclass
class FlipDecision(SchemaModel):
    """Whether reversing an ADR is currently permitted, and why not."""

    should_flip: bool
    reason: str
    cooldown_remaining_ms: int = 0
    confidence_gap: float = 0.0
    consecutive_confirmations: int = 0


@dataclass
class OscillationCheck(SchemaModel):
    proposal_id: str
    adr_id: Optional[str]
    would_flip: bool
    blocked: bool
    reason: str
    cooldown_remaining_ms: int = 0
    confidence_gap: float = 0.0
    consecutive_confirmations: int = 0


@dataclass
class ReversionCheck(SchemaModel):
    is_reversion: bool
    similar_decisions: List[str] = field(default_factory=list)
    similarity_score: float = 0.0


@dataclass
class StabilityScore(SchemaModel):
    server_id: str
    stability_score: float
    flips_in_window: int
    total_decisions: int


@dataclass
class PolicyRule(SchemaModel):
    """A stored governance rule evaluated against every proposal."""

    rule_id: str
    name: str
    category: str
    action: str = "require_approval"
    description: str = ""
    condition: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    created_at: str = ""

    def __post_init__(self):
        if self.category not in POLICY_RULE_CATEGORIES:
            raise ValueError(
                f"Invalid rule category '{self.category}'. Valid: {POLICY_RULE_CATEGORIES}"
            )
        if self.action not in POLICY_ACTIONS:
            raise ValueError(f"Invalid rule action '{self.action}'. Valid: {POLICY_ACTIONS}")


@dataclass
class PolicyViolation(SchemaModel):
    rule_id: str
    rule_name: str
    reason: str
    severity: str  # warning, blocking


@dataclass
class PolicyEvaluation(SchemaModel):
    proposal_id: str
    allowed: bool
    requires_approval: bool
    violations: List[PolicyViolation] = field(default_factory=list)
    applicable_rules: List[str] = field(default_factory=list)


@dataclass
class TriagedProposal(SchemaModel):
    proposal_id: str
    title: str
    category: str
    priority_score: float
    risk_adjusted_impact: float
    blocked_by_oscillation: bool
    requires_human_approval: bool
    reason: str
    scoring: Dict[str, float] = field(default_factory=dict)


@dataclass
class TriageResult(SchemaModel):
    target_server_id: str
    proposals: List[TriagedProposal] = field(default_factory=list)
    total_estimated_loc: int = 0
    budget_remaining: int = 0
    escalations: List[str] = field(default_factory=list)
