#!/usr/bin/env python3
# CUI // SP-CTI
"""Cross-perspective consensus engine.

Clusters findings from independent research perspectives (security,
reliability, ...) into consensus claims and scores how broadly each claim
is supported.

Architecture:
    - Findings are flattened in feed order, each tagged with its feed's
      perspective and batch confidence.
    - Greedy single-link clustering: every unassigned finding seeds a
      cluster; each later unassigned finding from a perspective not yet in
      the cluster joins when its similarity to the seed meets the threshold.
      A cluster never holds two findings of the same perspective.
    - The consensus text comes from the highest-confidence member (earliest
      member wins a tie); impact and confidence are means, risk is the max.

Usage:
    python -m refinery.research.consensus --feeds feeds.json --server-id srv-1 --json
    python -m refinery.research.consensus --feeds feeds.json --server-id srv-1 --store
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Dict, List, Sequence

from refinery.compat.datetime_utils import utc_now_iso
from refinery.config import load_config
from refinery.research.text_similarity import combined_similarity
from refinery.schemas.core import (
    IMPACT_DIMENSIONS,
    ConsensusFinding,
    ConsensusResult,
    Evidence,
    ExpectedImpact,
    Finding,
    ResearchFeed,
    max_risk,
)

logger = logging.getLogger("refinery.consensus")

DEFAULT_THRESHOLD = 0.3


class _Member:
    """A finding tagged with the perspective and confidence of its feed."""

    __slots__ = ("perspective", "finding", "confidence")

    def __init__(self, perspective: str, finding: Finding, confidence: float):
        self.perspective = perspective
        self.finding = finding
        self.confidence = confidence


def _cluster(members: List[_Member], threshold: float) -> List[List[_Member]]:
    clusters = []
    used = set()
    for i, seed in enumerate(members):
        if i in used:
            continue
        cluster = [seed]
        perspectives = {seed.perspective}
        used.add(i)
        for j in range(i + 1, len(members)):
            other = members[j]
            if j in used or other.perspective in perspectives:
                continue
            if combined_similarity(seed.finding.text, other.finding.text) >= threshold:
                cluster.append(other)
                perspectives.add(other.perspective)
                used.add(j)
        clusters.append(cluster)
    return clusters


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _build_finding(cluster: List[_Member], total_perspectives: int) -> ConsensusFinding:
    perspectives = []
    for m in cluster:
        if m.perspective not in perspectives:
            perspectives.append(m.perspective)

    best = cluster[0]
    for m in cluster[1:]:
        if m.confidence > best.confidence:
            best = m

    evidence: Dict[tuple, Evidence] = {}
    for m in cluster:
        for e in m.finding.evidence:
            evidence.setdefault(e.key, e)

    impact = ExpectedImpact(**{
        dim: _mean([getattr(m.finding.expected_impact, dim) for m in cluster])
        for dim in IMPACT_DIMENSIONS
    })

    return ConsensusFinding(
        claim=best.finding.claim,
        recommendation=best.finding.recommendation,
        supporting_perspectives=perspectives,
        agreement_score=len(perspectives) / total_perspectives,
        combined_confidence=_mean([m.confidence for m in cluster]),
        merged_impact=impact,
        merged_evidence=list(evidence.values()),
        risk_level=max_risk(m.finding.risk.level for m in cluster),
    )


def compute_consensus(
    feeds: Sequence[ResearchFeed],
    target_server_id: str,
    threshold: float = DEFAULT_THRESHOLD,
) -> ConsensusResult:
    """Cluster findings across perspectives into consensus findings.

    Args:
        feeds: Per-perspective finding batches, in the order they were produced.
        target_server_id: Server the findings are about.
        threshold: Minimum combined similarity for two findings to cluster.

    Returns:
        ConsensusResult; empty (overall_agreement 0.0) when there are no feeds.
    """
    result = ConsensusResult(
        consensus_id=str(uuid.uuid4()),
        target_server_id=target_server_id,
        computed_at=utc_now_iso(),
    )
    if not feeds:
        return result

    perspectives = []
    members = []
    for feed in feeds:
        if feed.perspective not in perspectives:
            perspectives.append(feed.perspective)
        for finding in feed.findings:
            members.append(_Member(feed.perspective, finding, feed.confidence))

    clusters = _cluster(members, threshold)
    result.findings = [_build_finding(c, len(perspectives)) for c in clusters]
    result.overall_agreement = _mean([f.agreement_score for f in result.findings])
    result.perspectives_used = perspectives

    logger.info(
        "Consensus for %s: %d findings -> %d clusters across %d perspectives (agreement %.2f)",
        target_server_id, len(members), len(clusters), len(perspectives),
        result.overall_agreement,
    )
    return result


def _load_feeds(path: Path) -> List[ResearchFeed]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, dict):
        raw = raw.get("feeds", [])
    return [ResearchFeed.from_dict(item) for item in raw]


def main():
    parser = argparse.ArgumentParser(description="Compute cross-perspective consensus")
    parser.add_argument("--feeds", type=Path, required=True, help="JSON file of research feeds")
    parser.add_argument("--server-id", required=True, help="Target server id")
    parser.add_argument("--threshold", type=float, default=None,
                        help="Similarity threshold (default from config)")
    parser.add_argument("--store", action="store_true", help="Persist the result and audit it")
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    config = load_config(args.config)
    threshold = args.threshold if args.threshold is not None else config.consensus_threshold

    try:
        feeds = _load_feeds(args.feeds)
    except (OSError, ValueError, KeyError) as exc:
        print(f"ERROR: cannot read feeds from {args.feeds}: {exc}", file=sys.stderr)
        sys.exit(1)

    result = compute_consensus(feeds, args.server_id, threshold)

    if args.store:
        from refinery.storage.audit_log import AuditLog
        from refinery.storage.database import RefineryDB

        RefineryDB(args.db_path).insert_consensus(result)
        AuditLog(args.db_path).record(
            "consensus.compute", "consensus_engine", "consensus", result.consensus_id,
            {"findings": len(result.findings), "overall_agreement": result.overall_agreement},
        )

    if args.json_output:
        print(json.dumps(result.to_dict(), indent=2, default=str))
        return

    print(f"Consensus {result.consensus_id} for {result.target_server_id}")
    print(f"  Perspectives: {', '.join(result.perspectives_used) or '(none)'}")
    print(f"  Overall agreement: {result.overall_agreement:.2f}")
    for i, f in enumerate(result.findings, 1):
        print(f"  {i}. [{f.risk_level}] {f.claim}")
        print(f"     agreement={f.agreement_score:.2f} confidence={f.combined_confidence:.2f} "
              f"({', '.join(f.supporting_perspectives)})")


if __name__ == "__main__":
    main()
