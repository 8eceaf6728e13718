#!/usr/bin/env python3
# CUI // SP-CTI
"""Anti-oscillation engine (hysteretic decision enforcement).

Prevents approve / revert / re-approve ping-pong against accepted ADRs:

    - cooldown window after every ADR
    - confidence margin: new evidence must beat the ADR's confidence by
      min_confidence_margin
    - repeated confirmation: min_consecutive_cycles similar decisions in a row
    - primary scorecard dimensions may not regress
    - no-op changes are detected and held back

The three flip gates run in strict order and the first failing gate is the
only reason reported. Blocked outcomes are audited; permitted flips are not.

Usage:
    python -m refinery.decision.anti_oscillation --proposal-id <id> --confidence 0.9
    python -m refinery.decision.anti_oscillation --stability srv-1 --json
"""

import argparse
import json
import logging
import math
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from refinery.compat.datetime_utils import parse_iso, utc_now
from refinery.config import RefineryConfig, load_config
from refinery.decision.scorecard import would_degrade
from refinery.schemas.core import ArchitectureDecisionRecord, ImprovementProposal
from refinery.schemas.decision import FlipDecision, OscillationCheck, ReversionCheck, StabilityScore

logger = logging.getLogger("refinery.anti_oscillation")

CONFLICT_SIMILARITY = 0.75
CONFLICT_WINDOW = 5
CONFIRMATION_SIMILARITY = 0.6
CONFIRMATION_WINDOW = 10
REVERSION_SIMILARITY = 0.7
REVERSION_WINDOW = 3
NO_OP_MIN_PROMPT_LOC = 5
NO_OP_SCORE_EPSILON = 0.001
MS_PER_HOUR = 3_600_000


class AntiOscillationEngine:
    """Hysteresis checks for proposals that touch decided ground.

    Args:
        db: RefineryDB accessors (ADRs, scorecards).
        audit: AuditLog writer.
        similarity: SimilaritySearch over indexed decisions.
        config: Rolling window used by the stability score.
    """

    def __init__(self, db, audit, similarity, config: Optional[RefineryConfig] = None):
        self.db = db
        self.audit = audit
        self.similarity = similarity
        self.config = config or RefineryConfig()

    # -- Oscillation ----------------------------------------------------------

    def check_oscillation(self, proposal: ImprovementProposal, proposal_confidence: float,
                          now: Optional[datetime] = None) -> OscillationCheck:
        """Decide whether ``proposal`` may proceed against any conflicting ADR."""
        now = now or utc_now()
        adr = self._find_conflicting_adr(proposal)
        if adr is None:
            return OscillationCheck(
                proposal_id=proposal.proposal_id,
                adr_id=None,
                would_flip=False,
                blocked=False,
                reason="No conflicting ADR found",
            )

        flip = self.should_flip(adr, proposal_confidence, now)

        degrades = False
        if proposal.scorecard_target is not None:
            baseline = self.db.get_latest_scorecard(proposal.target_server_id)
            degrades = would_degrade(baseline, proposal.scorecard_target)

        blocked = not flip.should_flip or degrades

        reasons = []
        if not flip.should_flip:
            reasons.append(f"Hysteresis check failed: {flip.reason}")
        if degrades:
            reasons.append("Change would degrade primary scorecard metrics")
        if not reasons:
            reasons.append(f'Conflicts with ADR "{adr.title}" ({adr.adr_id})')
        reason = "; ".join(reasons)

        if blocked:
            self.audit.record(
                "oscillation.blocked", "anti_oscillation_engine", "proposal",
                proposal.proposal_id,
                {
                    "conflicting_adr": adr.adr_id,
                    "reason": reason,
                    "confidence_gap": flip.confidence_gap,
                    "cooldown_remaining_ms": flip.cooldown_remaining_ms,
                },
            )
            logger.info("Proposal %s blocked against ADR %s: %s",
                        proposal.proposal_id, adr.adr_id, reason)

        return OscillationCheck(
            proposal_id=proposal.proposal_id,
            adr_id=adr.adr_id,
            would_flip=True,
            blocked=blocked,
            reason=reason,
            cooldown_remaining_ms=flip.cooldown_remaining_ms,
            confidence_gap=flip.confidence_gap,
            consecutive_confirmations=flip.consecutive_confirmations,
        )

    def should_flip(self, decision: ArchitectureDecisionRecord, new_confidence: float,
                    now: Optional[datetime] = None) -> FlipDecision:
        """Apply cooldown, then margin, then confirmation gates, stopping at the first failure."""
        now = now or utc_now()
        gap = new_confidence - decision.confidence

        cooldown_until = parse_iso(decision.cooldown_until)
        if now < cooldown_until:
            remaining_ms = math.ceil((cooldown_until - now) / timedelta(milliseconds=1))
            return FlipDecision(
                should_flip=False,
                reason=f"Cooldown active: {math.ceil(remaining_ms / MS_PER_HOUR)}h remaining",
                cooldown_remaining_ms=remaining_ms,
                confidence_gap=gap,
            )

        if gap < decision.min_confidence_margin:
            return FlipDecision(
                should_flip=False,
                reason=(f"Confidence gap {gap:.3f} below required margin "
                        f"{decision.min_confidence_margin}"),
                confidence_gap=gap,
            )

        confirmations = self._count_consecutive_confirmations(decision)
        if confirmations < decision.min_consecutive_cycles:
            return FlipDecision(
                should_flip=False,
                reason=(f"Only {confirmations}/{decision.min_consecutive_cycles} "
                        "consecutive confirmations"),
                confidence_gap=gap,
                consecutive_confirmations=confirmations,
            )

        return FlipDecision(
            should_flip=True,
            reason="All hysteresis conditions met",
            confidence_gap=gap,
            consecutive_confirmations=confirmations,
        )

    # -- No-op / reversion ----------------------------------------------------

    @staticmethod
    def is_no_op_change(proposal: ImprovementProposal) -> bool:
        """True for tiny prompt-only edits or changes that leave the overall score flat."""
        if proposal.category == "prompt_only" and proposal.estimated_loc_change < NO_OP_MIN_PROMPT_LOC:
            return True
        if proposal.scorecard_baseline is not None and proposal.scorecard_target is not None:
            delta = proposal.scorecard_target.overall_score - proposal.scorecard_baseline.overall_score
            return abs(delta) < NO_OP_SCORE_EPSILON
        return False

    def detect_reversion(self, proposal: ImprovementProposal) -> ReversionCheck:
        matches = self.similarity.query(f"{proposal.title} {proposal.description}", REVERSION_WINDOW)
        high = [m for m in matches if m.similarity > REVERSION_SIMILARITY]
        return ReversionCheck(
            is_reversion=bool(high),
            similar_decisions=[m.entry_id for m in high],
            similarity_score=high[0].similarity if high else 0.0,
        )

    # -- Stability ------------------------------------------------------------

    def compute_stability_score(self, server_id: str,
                                now: Optional[datetime] = None) -> StabilityScore:
        """1 - (ADRs superseded within the window / ADRs for the server), floored at 0."""
        now = now or utc_now()
        window = timedelta(hours=self.config.window_hours)

        server_adrs = [
            adr for adr in self.db.list_adrs()
            if adr.status in ("accepted", "superseded")
            and any(server_id in ref for ref in adr.related_proposals)
        ]
        flips = 0
        for adr in server_adrs:
            if not adr.superseded_by or not adr.updated_at:
                continue
            if now - parse_iso(adr.updated_at) < window:
                flips += 1

        total = len(server_adrs)
        score = 1.0 - flips / total if total else 1.0
        return StabilityScore(
            server_id=server_id,
            stability_score=max(0.0, score),
            flips_in_window=flips,
            total_decisions=total,
        )

    # -- Helpers --------------------------------------------------------------

    def _find_conflicting_adr(self, proposal: ImprovementProposal) -> Optional[ArchitectureDecisionRecord]:
        if proposal.adr_refs:
            for adr in self.db.list_active_adrs():
                if adr.adr_id in proposal.adr_refs:
                    return adr

        # Superseded ADRs may still rank above their active replacement
        matches = self.similarity.query(f"{proposal.title} {proposal.description}", CONFLICT_WINDOW)
        for match in matches:
            if match.similarity <= CONFLICT_SIMILARITY:
                break
            adr_id = match.metadata.get("adr_id")
            if not adr_id:
                continue
            adr = self.db.get_adr(adr_id)
            if adr is not None and adr.is_active:
                return adr
        return None

    def _count_consecutive_confirmations(self, decision: ArchitectureDecisionRecord) -> int:
        matches = self.similarity.query(f"{decision.title} {decision.decision}", CONFIRMATION_WINDOW)
        count = 0
        for match in matches:
            if match.similarity <= CONFIRMATION_SIMILARITY:
                break
            count += 1
        return count


def main():
    parser = argparse.ArgumentParser(description="Run anti-oscillation checks")
    parser.add_argument("--proposal-id", help="Check a stored proposal for oscillation")
    parser.add_argument("--confidence", type=float, default=0.5, help="Proposal confidence 0-1")
    parser.add_argument("--reversion", action="store_true", help="Also run reversion detection")
    parser.add_argument("--stability", metavar="SERVER_ID", help="Compute stability score")
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB
    from refinery.storage.similarity import DecisionIndex

    db = RefineryDB(args.db_path)
    engine = AntiOscillationEngine(db, AuditLog(args.db_path), DecisionIndex(args.db_path),
                                   load_config(args.config))
    output = {}

    if args.proposal_id:
        proposal = db.get_proposal(args.proposal_id)
        if proposal is None:
            parser.error(f"Proposal '{args.proposal_id}' not found")
        output["oscillation"] = engine.check_oscillation(proposal, args.confidence).to_dict()
        output["no_op"] = engine.is_no_op_change(proposal)
        if args.reversion:
            output["reversion"] = engine.detect_reversion(proposal).to_dict()

    if args.stability:
        output["stability"] = engine.compute_stability_score(args.stability).to_dict()

    if not output:
        parser.error("nothing to do: pass --proposal-id and/or --stability")

    if args.json_output:
        print(json.dumps(output, indent=2))
        return

    if "oscillation" in output:
        check = output["oscillation"]
        state = "BLOCKED" if check["blocked"] else "OK"
        print(f"Oscillation [{state}] adr={check['adr_id']}: {check['reason']}")
        print(f"No-op: {output['no_op']}")
    if "reversion" in output:
        rev = output["reversion"]
        print(f"Reversion: {rev['is_reversion']} ({rev['similarity_score']:.2f}) {rev['similar_decisions']}")
    if "stability" in output:
        s = output["stability"]
        print(f"Stability for {s['server_id']}: {s['stability_score']:.2f} "
              f"({s['flips_in_window']} flips / {s['total_decisions']} decisions)")


if __name__ == "__main__":
    main()
