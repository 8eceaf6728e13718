#!/usr/bin/env python3
# CUI // SP-CTI
"""Triage and prioritization engine.

Turns consensus findings into prioritized, budget-constrained improvement
proposals. Every finding passes through the same gates:

Pipeline:
    1. Escalation       agreement < 0.33 AND confidence < 0.5 goes to a
                        human through the governance gate (audited as
                        governance.escalation); no proposal is created
    2. Proposal draft   category, acceptance criteria and LOC estimate
                        inferred from the finding
    3. Policy           stored rules plus built-in budget/category/LOC checks
    4. Anti-oscillation conflicting ADR hysteresis and primary-metric checks
    5. No-op            tiny prompt edits and flat-score changes are held back

Architecture:
    - One triage pass per target server at a time (TargetLockRegistry); the
      read-ADRs -> decide -> write-proposal sequence never interleaves for
      the same target.
    - Every proposal is persisted with status "triaged" and its scoring
      breakdown is written to the audit trail (proposal.triage).
    - All audit entries of one pass share a correlation id.

Usage:
    # Triage the latest stored consensus for a server
    python -m refinery.decision.triage_engine --server-id srv-1 --json

    # Triage a consensus result from a file
    python -m refinery.decision.triage_engine --consensus-file consensus.json
"""

import argparse
import json
import logging
import math
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from refinery.compat.datetime_utils import to_iso, utc_now
from refinery.config import RefineryConfig, load_config
from refinery.decision.anti_oscillation import AntiOscillationEngine
from refinery.decision.policy import PolicyEngine
from refinery.delivery.governance import GovernanceGate
from refinery.resilience.correlation import correlation_scope, get_correlation_id
from refinery.resilience.locks import TargetLockRegistry
from refinery.schemas.core import (
    IMPACT_DIMENSIONS,
    ConsensusFinding,
    ConsensusResult,
    ImprovementProposal,
    TargetServerConfig,
)
from refinery.schemas.decision import TriagedProposal, TriageResult

logger = logging.getLogger("refinery.triage")

ESCALATION_AGREEMENT = 0.33
ESCALATION_CONFIDENCE = 0.5
CRITERIA_IMPACT_THRESHOLD = 0.3

# Ordered: the first category whose keywords appear wins
CATEGORY_SIGNALS = (
    ("security", ("security", "auth", "vulnerability")),
    ("dependency", ("dependency", "package", "supply chain")),
    ("refactor", ("refactor", "restructure", "clean up")),
    ("docs", ("documentation", "readme", "comment")),
    ("prompt_only", ("prompt", "template", "instruction")),
)

LOC_PER_IMPACT = {"critical": 200, "high": 150, "medium": 100, "low": 50}
RISK_PENALTY = {"low": 0.0, "medium": -0.05, "high": -0.10, "critical": -0.15}
RISK_MULTIPLIER = {"low": 1.0, "medium": 0.8, "high": 0.6, "critical": 0.4}
AGREEMENT_WEIGHT = 0.2
CONFIDENCE_WEIGHT = 0.15


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def infer_category(finding: ConsensusFinding) -> str:
    text = f"{finding.claim} {finding.recommendation}".lower()
    for category, keywords in CATEGORY_SIGNALS:
        if any(k in text for k in keywords):
            return category
    return "behavioral"


def build_acceptance_criteria(finding: ConsensusFinding) -> List[str]:
    impact = finding.merged_impact
    criteria = [f'Implementation addresses: "{finding.claim}"']
    if impact.security > CRITERIA_IMPACT_THRESHOLD:
        criteria.append("Security scan passes with no new vulnerabilities")
    if impact.reliability > CRITERIA_IMPACT_THRESHOLD:
        criteria.append("All existing tests continue to pass")
        criteria.append("New tests added for the changed behavior")
    if impact.performance > CRITERIA_IMPACT_THRESHOLD:
        criteria.append("Performance benchmarks show no regression")
    criteria.append("Scorecard overall score does not decrease")
    return criteria


def estimate_loc(finding: ConsensusFinding) -> int:
    return _round_half_up(finding.merged_impact.magnitude() * LOC_PER_IMPACT[finding.risk_level])


def compute_priority(finding: ConsensusFinding, weights: Dict[str, float]) -> Dict[str, float]:
    """Priority score (clamped to [0, 1]) with its components."""
    impact_score = sum(
        getattr(finding.merged_impact, dim) * weights.get(dim, 0.0) for dim in IMPACT_DIMENSIONS
    )
    agreement_bonus = finding.agreement_score * AGREEMENT_WEIGHT
    confidence_bonus = finding.combined_confidence * CONFIDENCE_WEIGHT
    risk_penalty = RISK_PENALTY[finding.risk_level]
    raw = impact_score + agreement_bonus + confidence_bonus + risk_penalty
    return {
        "impact_score": impact_score,
        "agreement_bonus": agreement_bonus,
        "confidence_bonus": confidence_bonus,
        "risk_penalty": risk_penalty,
        "priority_score": max(0.0, min(1.0, raw)),
    }


def compute_risk_adjusted_impact(finding: ConsensusFinding) -> float:
    return (finding.merged_impact.magnitude()
            * RISK_MULTIPLIER[finding.risk_level]
            * finding.combined_confidence)


def escalation_message(finding: ConsensusFinding) -> str:
    return (f'Low-agreement finding needs human review: "{finding.claim}" '
            f"(agreement: {finding.agreement_score:.2f}, "
            f"confidence: {finding.combined_confidence:.2f})")


def _triage_reason(allowed: bool, oscillation_blocked: bool, no_op: bool,
                   finding: ConsensusFinding) -> str:
    if no_op:
        return "Blocked: no measurable impact on scorecards"
    if oscillation_blocked:
        return "Blocked by anti-oscillation engine"
    if not allowed:
        return "Blocked by policy violation"
    perspectives = ", ".join(finding.supporting_perspectives)
    return (f"Supported by {len(finding.supporting_perspectives)} perspective(s) "
            f"({perspectives}) with {finding.agreement_score * 100:.0f}% agreement")


class TriageEngine:
    """Governance-aware triage of consensus findings.

    Args:
        db: RefineryDB accessors.
        audit: AuditLog writer.
        similarity: SimilaritySearch over indexed decisions.
        config: Budget and weight defaults.
        policy: Optional PolicyEngine (built from db/audit/config if omitted).
        anti_oscillation: Optional AntiOscillationEngine (built if omitted).
        governance: Optional GovernanceGate that audits escalations (built if omitted).
        locks: Optional shared TargetLockRegistry; share one across engines
            that triage the same targets concurrently.
    """

    def __init__(self, db, audit, similarity, config: Optional[RefineryConfig] = None,
                 policy=None, anti_oscillation=None, governance=None,
                 locks: Optional[TargetLockRegistry] = None):
        self.db = db
        self.audit = audit
        self.config = config or RefineryConfig()
        self.policy = policy or PolicyEngine(db, audit, self.config)
        self.anti_oscillation = anti_oscillation or AntiOscillationEngine(
            db, audit, similarity, self.config)
        self.governance = governance or GovernanceGate(db, audit, self.config)
        self.locks = locks or TargetLockRegistry()

    def _weights(self, server: Optional[TargetServerConfig]) -> Dict[str, float]:
        weights = dict(self.config.default_scorecard_weights)
        if server is not None and server.scorecard_weights:
            weights.update(server.scorecard_weights)
        return weights

    def _budget(self, server: Optional[TargetServerConfig]) -> int:
        if server is not None and server.change_budget_per_window is not None:
            return server.change_budget_per_window
        return self.config.change_budget_per_window

    def _draft_proposal(self, finding: ConsensusFinding, target_server_id: str,
                        now: datetime) -> ImprovementProposal:
        stamp = to_iso(now)
        return ImprovementProposal(
            proposal_id=str(uuid.uuid4()),
            target_server_id=target_server_id,
            title=finding.claim[:200],
            description=f"{finding.claim}\n\nRecommendation: {finding.recommendation}",
            category=infer_category(finding),
            status="triaged",
            risk_level=finding.risk_level,
            estimated_loc_change=estimate_loc(finding),
            acceptance_criteria=build_acceptance_criteria(finding),
            consensus_finding_ref=finding.claim[:50],
            created_at=stamp,
            updated_at=stamp,
        )

    def triage_findings(self, consensus: ConsensusResult,
                        now: Optional[datetime] = None) -> TriageResult:
        """Triage every finding of ``consensus`` into proposals or escalations."""
        now = now or utc_now()
        target = consensus.target_server_id
        with self.locks.hold(target), correlation_scope(get_correlation_id()) as cid:
            logger.info("Triage pass for %s (%d findings, correlation %s)",
                        target, len(consensus.findings), cid)
            return self._triage_locked(consensus, now)

    def _triage_locked(self, consensus: ConsensusResult, now: datetime) -> TriageResult:
        target = consensus.target_server_id
        server = self.db.get_target_server(target)
        weights = self._weights(server)

        triaged: List[TriagedProposal] = []
        escalations: List[str] = []
        total_loc = 0

        for finding in consensus.findings:
            if (finding.agreement_score < ESCALATION_AGREEMENT
                    and finding.combined_confidence < ESCALATION_CONFIDENCE):
                message = escalation_message(finding)
                self.governance.escalate_to_human(
                    message, "consensus", consensus.consensus_id,
                    provider_disagreement=True, low_confidence=True,
                    high_risk=finding.risk_level in ("high", "critical"),
                )
                escalations.append(message)
                logger.info("Escalated low-agreement finding: %s", finding.claim[:80])
                continue

            proposal = self._draft_proposal(finding, target, now)
            total_loc += proposal.estimated_loc_change

            evaluation = self.policy.evaluate(proposal, now=now)
            oscillation = self.anti_oscillation.check_oscillation(
                proposal, finding.combined_confidence, now=now)
            no_op = self.anti_oscillation.is_no_op_change(proposal)

            scoring = compute_priority(finding, weights)
            priority_score = scoring["priority_score"]
            risk_adjusted = compute_risk_adjusted_impact(finding)

            item = TriagedProposal(
                proposal_id=proposal.proposal_id,
                title=proposal.title,
                category=proposal.category,
                priority_score=priority_score,
                risk_adjusted_impact=risk_adjusted,
                blocked_by_oscillation=oscillation.blocked or no_op,
                requires_human_approval=evaluation.requires_approval or not evaluation.allowed,
                reason=_triage_reason(evaluation.allowed, oscillation.blocked, no_op, finding),
                scoring=scoring,
            )
            triaged.append(item)

            proposal.priority = _round_half_up(priority_score * 100)
            self.db.insert_proposal(proposal)
            self.audit.record(
                "proposal.triage", "triage_engine", "proposal", proposal.proposal_id,
                {
                    "priority_score": priority_score,
                    "risk_adjusted_impact": risk_adjusted,
                    "blocked": item.blocked_by_oscillation,
                    "requires_approval": item.requires_human_approval,
                    "policy_allowed": evaluation.allowed,
                    "conflicting_adr": oscillation.adr_id,
                    "scoring": scoring,
                },
            )

        triaged.sort(key=lambda t: t.priority_score, reverse=True)
        active = sum(1 for t in triaged if not t.blocked_by_oscillation)
        result = TriageResult(
            target_server_id=target,
            proposals=triaged,
            total_estimated_loc=total_loc,
            budget_remaining=max(0, self._budget(server) - active),
            escalations=escalations,
        )
        logger.info("Triage for %s: %d proposals (%d active), %d escalations, budget remaining %d",
                    target, len(triaged), active, len(escalations), result.budget_remaining)
        return result


def _print_human(result: TriageResult):
    print(f"Triage for {result.target_server_id}")
    print("=" * 60)
    print(f"Proposals: {len(result.proposals)}  Estimated LOC: {result.total_estimated_loc}  "
          f"Budget remaining: {result.budget_remaining}")
    for p in result.proposals:
        flags = []
        if p.blocked_by_oscillation:
            flags.append("BLOCKED")
        if p.requires_human_approval:
            flags.append("APPROVAL")
        flag_text = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {p.priority_score:.3f}  [{p.category}] {p.title[:60]}{flag_text}")
        print(f"         {p.reason}")
    if result.escalations:
        print(f"\nEscalations ({len(result.escalations)}):")
        for e in result.escalations:
            print(f"  - {e}")


def main():
    parser = argparse.ArgumentParser(
        description="Refinery triage: consensus findings -> prioritized proposals"
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--server-id", help="Triage the latest stored consensus for this server")
    source.add_argument("--consensus-file", type=Path, help="Triage a consensus result JSON file")
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path override")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB
    from refinery.storage.similarity import DecisionIndex

    try:
        config = load_config(args.config)
        db = RefineryDB(args.db_path)
        if args.server_id:
            consensus = db.get_latest_consensus(args.server_id)
            if consensus is None:
                raise LookupError(f"No stored consensus for server '{args.server_id}'")
        else:
            with open(args.consensus_file, "r", encoding="utf-8") as f:
                consensus = ConsensusResult.from_dict(json.load(f))

        engine = TriageEngine(db, AuditLog(args.db_path), DecisionIndex(args.db_path), config)
        result = engine.triage_findings(consensus)

        if args.json_output:
            print(json.dumps(result.to_dict(), indent=2, default=str))
        else:
            _print_human(result)

    except (LookupError, OSError, ValueError, KeyError) as e:
        if args.json_output:
            print(json.dumps({"error": str(e)}, indent=2))
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
