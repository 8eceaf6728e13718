#!/usr/bin/env python3
# CUI // SP-CTI
"""Shared schema models for the Refinery Decision Plane.

Stdlib dataclass models shared by the decision engines, the record store
and the CLI tools. Every model round-trips through ``to_dict``/``from_dict``.
"""

from refinery.schemas.core import (
    ArchitectureDecisionRecord,
    ConsensusFinding,
    ConsensusResult,
    Evidence,
    ExpectedImpact,
    Finding,
    ImprovementProposal,
    ResearchFeed,
    Risk,
    ScorecardDimension,
    ScorecardSnapshot,
    TargetServerConfig,
)
from refinery.schemas.decision import (
    FlipDecision,
    OscillationCheck,
    PolicyEvaluation,
    PolicyRule,
    PolicyViolation,
    ReversionCheck,
    StabilityScore,
    TriagedProposal,
    TriageResult,
)
from refinery.schemas.delivery import (
    ApprovalRequest,
    DeliveryPlan,
    GateResult,
    GovernanceApproval,
    ReleaseRecord,
    TestRunRecord,
    TestSuiteResult,
    TransitionResult,
)
from refinery.schemas.research_ops import (
    AdvanceResult,
    ResearchCase,
    ValidationCheck,
    ValidationResult,
)
from refinery.schemas.validation import SchemaValidationError, build_record

__all__ = [
    "ArchitectureDecisionRecord",
    "ConsensusFinding",
    "ConsensusResult",
    "Evidence",
    "ExpectedImpact",
    "Finding",
    "ImprovementProposal",
    "ResearchFeed",
    "Risk",
    "ScorecardDimension",
    "ScorecardSnapshot",
    "TargetServerConfig",
    "FlipDecision",
    "OscillationCheck",
    "PolicyEvaluation",
    "PolicyRule",
    "PolicyViolation",
    "ReversionCheck",
    "StabilityScore",
    "TriagedProposal",
    "TriageResult",
    "ApprovalRequest",
    "DeliveryPlan",
    "GateResult",
    "GovernanceApproval",
    "ReleaseRecord",
    "TestRunRecord",
    "TestSuiteResult",
    "TransitionResult",
    "AdvanceResult",
    "ResearchCase",
    "ValidationCheck",
    "ValidationResult",
    "SchemaValidationError",
    "build_record",
]
