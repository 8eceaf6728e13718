#!/usr/bin/env python3
# CUI // SP-CTI
"""Scorecard capture and comparison.

Scorecards are the objective function for a target server: named quality
dimensions, each with a weight and a primary flag. A change may not lower
any primary dimension, and the overall score is the weight-normalized mean.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from refinery.compat.datetime_utils import utc_now_iso
from refinery.schemas.base import SchemaModel
from refinery.schemas.core import ScorecardDimension, ScorecardSnapshot

logger = logging.getLogger("refinery.scorecard")


@dataclass
class DimensionDelta(SchemaModel):
    name: str
    baseline_score: float
    current_score: float
    delta: float
    is_primary: bool
    improved: bool


@dataclass
class ScorecardComparison(SchemaModel):
    baseline_id: str
    current_id: str
    overall_delta: float
    dimension_deltas: List[DimensionDelta] = field(default_factory=list)
    primary_metrics_improved: bool = True
    any_primary_degraded: bool = False
    monotonic_improvement: bool = True


def compute_overall_score(dimensions: Iterable[ScorecardDimension]) -> float:
    """Weighted mean of dimension scores; 0.0 when total weight is zero."""
    weighted = 0.0
    total = 0.0
    for dim in dimensions:
        weighted += dim.score * dim.weight
        total += dim.weight
    return weighted / total if total > 0 else 0.0


def compare_scorecards(baseline: ScorecardSnapshot,
                       current: ScorecardSnapshot) -> ScorecardComparison:
    """Per-dimension deltas for dimensions present in both snapshots."""
    deltas = []
    degraded = False
    for base_dim in baseline.dimensions:
        curr_dim = current.dimension(base_dim.name)
        if curr_dim is None:
            continue
        delta = curr_dim.score - base_dim.score
        deltas.append(DimensionDelta(
            name=base_dim.name,
            baseline_score=base_dim.score,
            current_score=curr_dim.score,
            delta=delta,
            is_primary=base_dim.is_primary,
            improved=delta >= 0,
        ))
        if base_dim.is_primary and delta < 0:
            degraded = True

    return ScorecardComparison(
        baseline_id=baseline.scorecard_id,
        current_id=current.scorecard_id,
        overall_delta=current.overall_score - baseline.overall_score,
        dimension_deltas=deltas,
        primary_metrics_improved=not degraded,
        any_primary_degraded=degraded,
        monotonic_improvement=not degraded and current.overall_score >= baseline.overall_score,
    )


def would_degrade(baseline: Optional[ScorecardSnapshot],
                  target: Optional[ScorecardSnapshot]) -> bool:
    """True when any primary dimension of ``baseline`` scores lower in ``target``."""
    if baseline is None or target is None:
        return False
    return compare_scorecards(baseline, target).any_primary_degraded


def capture_scorecard(db, audit, target_server_id: str,
                      dimensions: List[ScorecardDimension]) -> ScorecardSnapshot:
    """Persist a new snapshot (overall score computed) and audit it."""
    snapshot = ScorecardSnapshot(
        scorecard_id=str(uuid.uuid4()),
        target_server_id=target_server_id,
        captured_at=utc_now_iso(),
        dimensions=tuple(dimensions),
        overall_score=compute_overall_score(dimensions),
    )
    db.insert_scorecard(snapshot)
    audit.record(
        "scorecard.capture", "scorecard_engine", "scorecard", snapshot.scorecard_id,
        {
            "target_server_id": target_server_id,
            "overall_score": snapshot.overall_score,
            "dimension_scores": {d.name: d.score for d in dimensions},
        },
    )
    logger.info("Captured scorecard %s for %s (overall %.3f)",
                snapshot.scorecard_id, target_server_id, snapshot.overall_score)
    return snapshot


def format_scorecard_report(snapshot: ScorecardSnapshot) -> str:
    lines = [
        "# Scorecard Report",
        "",
        f"**Server**: {snapshot.target_server_id}",
        f"**Captured**: {snapshot.captured_at}",
        f"**Overall Score**: {snapshot.overall_score * 100:.1f}%",
        "",
    ]
    for dim in snapshot.dimensions:
        primary = " (PRIMARY)" if dim.is_primary else ""
        lines.append(f"- {dim.name}{primary}: {dim.score * 100:.1f}% (weight: {dim.weight})")
    return "\n".join(lines) + "\n"
