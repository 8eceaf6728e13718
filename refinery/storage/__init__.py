# CUI // SP-CTI
"""Refinery storage: record store, audit trail, similarity index, domain accessors."""

from refinery.storage.audit_log import AuditLog  # noqa: F401
from refinery.storage.database import RefineryDB  # noqa: F401
from refinery.storage.record_store import ListResult, RecordStore  # noqa: F401
from refinery.storage.similarity import (  # noqa: F401
    DecisionIndex,
    SimilarityMatch,
    SimilaritySearch,
)
