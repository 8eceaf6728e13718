#!/usr/bin/env python3
# CUI // SP-CTI
"""Decision similarity search.

The anti-oscillation engine only needs ``query(text, k)`` returning the k
most similar past decisions with their metadata. That contract is the
``SimilaritySearch`` ABC (provider pattern: ABC + implementations);
``DecisionIndex`` is the default implementation, a bag-of-words hashed
embedding with cosine similarity stored in the ``vectors`` table.

Usage:
    from refinery.storage.similarity import DecisionIndex

    index = DecisionIndex(db_path)
    index.index("adr-1", "Use stdio transport Keep the stdio transport",
                metadata={"adr_id": "adr-1"})
    for match in index.query("switch to stdio transport", k=3):
        print(match.entry_id, round(match.similarity, 3))
"""

import abc
import json
import logging
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from refinery.compat.datetime_utils import utc_now_iso
from refinery.storage.schema import get_db_connection

logger = logging.getLogger("refinery.storage.similarity")

EMBEDDING_DIMS = 256
DECISIONS_NAMESPACE = "decisions"

_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")


@dataclass
class SimilarityMatch:
    """One ranked match: the indexed entry id, cosine similarity and metadata."""

    entry_id: str
    similarity: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    content_text: str = ""


# ---------------------------------------------------------------------------
# ABC
# ---------------------------------------------------------------------------

class SimilaritySearch(abc.ABC):
    """Capability interface consumed by the anti-oscillation engine."""

    @abc.abstractmethod
    def query(self, text: str, k: int) -> List[SimilarityMatch]:
        """Return up to ``k`` matches ordered by descending similarity."""


# ---------------------------------------------------------------------------
# Embedding
# ---------------------------------------------------------------------------

def _word_hash(word: str) -> int:
    """32-bit signed string hash (h * 31 + c, wrapping)."""
    h = 0
    for ch in word:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def generate_embedding(text: str, dims: int = EMBEDDING_DIMS) -> List[float]:
    """Hashed bag-of-words vector, L2-normalized (all zeros for empty text)."""
    words = [w for w in _NON_WORD_RE.sub("", text.lower()).split() if w]
    emb = [0.0] * dims
    for word in words:
        emb[abs(_word_hash(word)) % dims] += 1.0
    mag = math.sqrt(sum(v * v for v in emb))
    if mag > 0:
        emb = [v / mag for v in emb]
    return emb


def cosine(a: List[float], b: List[float]) -> float:
    if len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    denom = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / denom if denom > 0 else 0.0


# ---------------------------------------------------------------------------
# SQLite-backed implementation
# ---------------------------------------------------------------------------

class DecisionIndex(SimilaritySearch):
    """Vector index over one namespace of the ``vectors`` table."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None,
                 namespace: str = DECISIONS_NAMESPACE):
        self.db_path = db_path
        self.namespace = namespace

    def index(self, entry_id: str, text: str,
              metadata: Optional[Dict[str, Any]] = None) -> None:
        """Index (or re-index) ``text`` under ``entry_id``."""
        embedding = generate_embedding(text)
        conn = get_db_connection(self.db_path)
        try:
            conn.execute(
                "INSERT OR REPLACE INTO vectors "
                "(vector_id, namespace, content_text, embedding, metadata, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (entry_id, self.namespace, text, json.dumps(embedding),
                 json.dumps(metadata or {}, default=str), utc_now_iso()),
            )
            conn.commit()
        finally:
            conn.close()
        logger.debug("Indexed %s in namespace %s", entry_id, self.namespace)

    def remove(self, entry_id: str) -> bool:
        """Drop ``entry_id`` from the namespace. Returns True if it was indexed."""
        conn = get_db_connection(self.db_path)
        try:
            cur = conn.execute(
                "DELETE FROM vectors WHERE vector_id = ? AND namespace = ?",
                (entry_id, self.namespace),
            )
            conn.commit()
        finally:
            conn.close()
        return cur.rowcount > 0

    def query(self, text: str, k: int = 5) -> List[SimilarityMatch]:
        q_emb = generate_embedding(text)
        conn = get_db_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT vector_id, content_text, embedding, metadata FROM vectors "
                "WHERE namespace = ? ORDER BY created_at, vector_id",
                (self.namespace,),
            ).fetchall()
        finally:
            conn.close()

        matches = []
        for row in rows:
            try:
                embedding = json.loads(row["embedding"])
                metadata = json.loads(row["metadata"]) if row["metadata"] else {}
            except ValueError:
                logger.warning("Skipping corrupt vector %s", row["vector_id"])
                continue
            matches.append(SimilarityMatch(
                entry_id=row["vector_id"],
                similarity=cosine(q_emb, embedding),
                metadata=metadata,
                content_text=row["content_text"],
            ))
        # Stable sort keeps insertion order among equal similarities
        matches.sort(key=lambda m: m.similarity, reverse=True)
        return matches[:k]

    def stats(self) -> Dict[str, Any]:
        conn = get_db_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT namespace, COUNT(*) AS n FROM vectors GROUP BY namespace"
            ).fetchall()
        finally:
            conn.close()
        by_namespace = {r["namespace"]: r["n"] for r in rows}
        return {"total": sum(by_namespace.values()), "by_namespace": by_namespace}
