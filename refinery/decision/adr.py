#!/usr/bin/env python3
# CUI // SP-CTI
"""Architecture Decision Record (ADR) management.

ADRs are binding tie-breakers: once accepted, a proposal that contradicts
one is held back unless the anti-oscillation engine allows the flip. Every
ADR is indexed for similarity search so later proposals can find the
decision they conflict with, and every change is recorded in the audit
trail.

Usage:
    python -m refinery.decision.adr --title "Keep stdio transport" \\
        --decision "Stay on stdio" --rationale "HTTP adds auth surface" \\
        --confidence 0.7 --proposal srv-1
    python -m refinery.decision.adr --list --json
"""

import argparse
import json
import logging
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from refinery.compat.datetime_utils import to_iso, utc_now
from refinery.config import RefineryConfig, load_config
from refinery.schemas.core import ArchitectureDecisionRecord, ImprovementProposal

logger = logging.getLogger("refinery.adr")

RELATED_SIMILARITY = 0.5


def adr_index_text(adr: ArchitectureDecisionRecord) -> str:
    return f"{adr.title} {adr.decision} {adr.rationale}"


class ADRRegistry:
    """Creates, supersedes and looks up ADRs.

    Args:
        db: RefineryDB accessors.
        audit: AuditLog writer.
        index: DecisionIndex (or any object with ``index``, ``remove`` and ``query``).
        config: Hysteresis defaults for new ADRs.
    """

    def __init__(self, db, audit, index, config: Optional[RefineryConfig] = None):
        self.db = db
        self.audit = audit
        self.index = index
        self.config = config or RefineryConfig()

    def create_adr(
        self,
        title: str,
        decision: str,
        confidence: float,
        context: str = "",
        rationale: str = "",
        consequences: Optional[List[str]] = None,
        alternatives_considered: Optional[List[str]] = None,
        related_proposals: Optional[List[str]] = None,
        cooldown_hours: Optional[float] = None,
        min_confidence_margin: Optional[float] = None,
        min_consecutive_cycles: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ArchitectureDecisionRecord:
        """Record an accepted ADR with its cooldown and hysteresis settings."""
        now = now or utc_now()
        if cooldown_hours is None:
            cooldown_hours = self.config.cooldown_hours

        adr = ArchitectureDecisionRecord(
            adr_id=str(uuid.uuid4()),
            title=title,
            decision=decision,
            confidence=confidence,
            cooldown_until=to_iso(now + timedelta(hours=cooldown_hours)),
            min_confidence_margin=(
                self.config.min_confidence_margin
                if min_confidence_margin is None else min_confidence_margin
            ),
            min_consecutive_cycles=(
                self.config.min_consecutive_cycles
                if min_consecutive_cycles is None else min_consecutive_cycles
            ),
            status="accepted",
            context=context,
            rationale=rationale,
            consequences=list(consequences or []),
            alternatives_considered=list(alternatives_considered or []),
            related_proposals=list(related_proposals or []),
            created_at=to_iso(now),
            updated_at=to_iso(now),
        )

        self.db.insert_adr(adr)
        self.index.index(
            f"adr:{adr.adr_id}", adr_index_text(adr),
            metadata={"adr_id": adr.adr_id, "confidence": adr.confidence},
        )
        self.audit.record(
            "adr.record", "decision_plane", "adr", adr.adr_id,
            {"title": title, "confidence": confidence, "cooldown_hours": cooldown_hours},
        )
        logger.info("Recorded ADR %s: %s (cooldown %sh)", adr.adr_id, title, cooldown_hours)
        return adr

    def replace_adr(self, old_adr_id: str, **new_fields) -> Optional[dict]:
        """Create a replacement ADR and mark the old one superseded.

        The new ADR inherits the old one's related proposals. Returns
        ``{"old": ..., "new": ...}`` or None when the old ADR does not exist.
        """
        old = self.db.get_adr(old_adr_id)
        if old is None:
            return None
        related = list(new_fields.pop("related_proposals", None) or [])
        related.extend(p for p in old.related_proposals if p not in related)
        new = self.create_adr(related_proposals=related, **new_fields)
        self.db.supersede_adr(old_adr_id, new.adr_id)
        self.index.remove(f"adr:{old_adr_id}")
        self.audit.record(
            "adr.supersede", "decision_plane", "adr", old_adr_id,
            {"superseded_by": new.adr_id},
        )
        logger.info("ADR %s superseded by %s", old_adr_id, new.adr_id)
        return {"old": old, "new": new}

    def find_related_adrs(self, proposal: ImprovementProposal,
                          k: int = 5) -> List[ArchitectureDecisionRecord]:
        """Accepted ADRs whose indexed text resembles the proposal."""
        related = []
        seen = set()
        for match in self.index.query(f"{proposal.title} {proposal.description}", k):
            adr_id = match.metadata.get("adr_id")
            if not adr_id or adr_id in seen or match.similarity <= RELATED_SIMILARITY:
                continue
            seen.add(adr_id)
            adr = self.db.get_adr(adr_id)
            if adr is not None and adr.is_active:
                related.append(adr)
        return related


def format_adr_markdown(adr: ArchitectureDecisionRecord) -> str:
    lines = [
        f"# ADR: {adr.title}",
        "",
        f"**Status**: {adr.status} | **Confidence**: {adr.confidence * 100:.0f}% | "
        f"**Cooldown Until**: {adr.cooldown_until}",
        "",
        "## Context", adr.context, "",
        "## Decision", adr.decision, "",
        "## Rationale", adr.rationale, "",
        "## Consequences",
        *[f"- {c}" for c in adr.consequences],
        "",
        "## Alternatives",
        *[f"- {a}" for a in adr.alternatives_considered],
    ]
    if adr.superseded_by:
        lines += ["", f"**Superseded by**: {adr.superseded_by}"]
    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Record or list Architecture Decision Records")
    parser.add_argument("--list", action="store_true", help="List ADRs")
    parser.add_argument("--status", help="Filter listed ADRs by status")
    parser.add_argument("--show", help="Print one ADR as markdown")
    parser.add_argument("--title", help="ADR title")
    parser.add_argument("--decision", help="What was decided")
    parser.add_argument("--rationale", default="", help="Why this choice")
    parser.add_argument("--context", default="", help="Decision context")
    parser.add_argument("--confidence", type=float, default=0.5, help="Decision confidence 0-1")
    parser.add_argument("--alternatives", help="Comma-separated alternatives considered")
    parser.add_argument("--proposal", action="append", default=[],
                        help="Related proposal or server id (repeatable)")
    parser.add_argument("--cooldown-hours", type=float, default=None, help="Override cooldown")
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

    if args.list:
        adrs = db.list_adrs(status=args.status)
        if args.json_output:
            print(json.dumps([a.to_dict() for a in adrs], indent=2))
        else:
            for a in adrs:
                print(f"{a.adr_id}  [{a.status}] {a.title} (confidence {a.confidence:.2f})")
        return

    if args.show:
        adr = db.get_adr(args.show)
        if adr is None:
            parser.error(f"ADR '{args.show}' not found")
        print(json.dumps(adr.to_dict(), indent=2) if args.json_output else format_adr_markdown(adr))
        return

    if not args.title or not args.decision:
        parser.error("--title and --decision are required to record an ADR")

    registry = ADRRegistry(db, AuditLog(args.db_path), DecisionIndex(args.db_path),
                           load_config(args.config))
    adr = registry.create_adr(
        title=args.title,
        decision=args.decision,
        confidence=args.confidence,
        context=args.context,
        rationale=args.rationale,
        alternatives_considered=args.alternatives.split(",") if args.alternatives else [],
        related_proposals=args.proposal,
        cooldown_hours=args.cooldown_hours,
    )
    if args.json_output:
        print(json.dumps(adr.to_dict(), indent=2))
    else:
        print(f"ADR recorded: {adr.adr_id} ({adr.title}), cooldown until {adr.cooldown_until}")


if __name__ == "__main__":
    main()
