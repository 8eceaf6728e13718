#!/usr/bin/env python3
# CUI // SP-CTI
"""Shared pytest fixtures for the Refinery test suite.

Every test gets its own SQLite database under tmp_path, a fresh
RefineryConfig, and a deterministic SimilaritySearch fake so decision logic
can be exercised without the bag-of-words index.
"""

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure project root is on sys.path
BASE_DIR = Path(__file__).resolve().parent.parent
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from refinery.compat.datetime_utils import to_iso  # noqa: E402
from refinery.config import RefineryConfig  # noqa: E402
from refinery.resilience.correlation import clear_correlation_id  # noqa: E402
from refinery.schemas.core import (  # noqa: E402
    ArchitectureDecisionRecord,
    ConsensusFinding,
    ExpectedImpact,
    ImprovementProposal,
)
from refinery.storage.audit_log import AuditLog  # noqa: E402
from refinery.storage.database import RefineryDB  # noqa: E402
from refinery.storage.similarity import SimilarityMatch, SimilaritySearch  # noqa: E402

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Deterministic similarity fake
# ---------------------------------------------------------------------------
class FakeSimilarity(SimilaritySearch):
    """Scripted SimilaritySearch.

    ``default`` is returned for every query; ``by_k`` overrides the result
    for a specific k (the conflict lookup asks for k=5, the confirmation
    count for k=10, reversion detection for k=3). Matches come back in the
    scripted order, truncated to k. Calls are recorded.
    """

    def __init__(self, default: Optional[List[SimilarityMatch]] = None):
        self.default: List[SimilarityMatch] = list(default or [])
        self.by_k: Dict[int, List[SimilarityMatch]] = {}
        self.calls: List[tuple] = []

    def query(self, text: str, k: int) -> List[SimilarityMatch]:
        self.calls.append((text, k))
        matches = self.by_k.get(k, self.default)
        return list(matches[:k])


def match(entry_id: str, similarity: float, **metadata) -> SimilarityMatch:
    return SimilarityMatch(entry_id=entry_id, similarity=similarity, metadata=metadata)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def make_adr(db, title="Keep stdio transport", decision="Stay on stdio transport",
             confidence=0.6, cooldown_until=None, now=FIXED_NOW, **overrides):
    overrides.setdefault("adr_id", str(uuid.uuid4()))
    overrides.setdefault("created_at", to_iso(now - timedelta(days=10)))
    overrides.setdefault("updated_at", overrides["created_at"])
    adr = ArchitectureDecisionRecord(
        title=title,
        decision=decision,
        confidence=confidence,
        cooldown_until=to_iso(cooldown_until or (now - timedelta(hours=1))),
        **overrides,
    )
    db.insert_adr(adr)
    return adr


def make_proposal(server_id="srv-1", title="Switch transport to HTTP",
                  description="Replace stdio with streamable HTTP", **overrides):
    return ImprovementProposal(
        proposal_id=overrides.pop("proposal_id", str(uuid.uuid4())),
        target_server_id=server_id,
        title=title,
        description=description,
        **overrides,
    )


def make_consensus_finding(claim="Add input validation to tool handlers",
                           recommendation="Validate parameters against schemas",
                           agreement=1.0, confidence=0.8, risk_level="low",
                           perspectives=("security", "reliability"), **impact):
    return ConsensusFinding(
        claim=claim,
        recommendation=recommendation,
        supporting_perspectives=list(perspectives),
        agreement_score=agreement,
        combined_confidence=confidence,
        merged_impact=ExpectedImpact(**impact),
        risk_level=risk_level,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _clean_correlation():
    clear_correlation_id()
    yield
    clear_correlation_id()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "refinery.db"


@pytest.fixture
def db(db_path):
    return RefineryDB(db_path)


@pytest.fixture
def audit(db_path):
    return AuditLog(db_path)


@pytest.fixture
def config():
    return RefineryConfig()


@pytest.fixture
def similarity():
    return FakeSimilarity()
