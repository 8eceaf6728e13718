# CUI // SP-CTI
"""Tests for refinery.storage (record store, audit trail, similarity index)."""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import json

import pytest

from conftest import make_proposal
from refinery.resilience.correlation import correlation_scope
from refinery.resilience.errors import RefineryPermanentError
from refinery.schemas.core import ImprovementProposal
from refinery.schemas.validation import SchemaValidationError, build_record
from refinery.storage.audit_log import AuditLog
from refinery.storage.record_store import RecordStore
from refinery.storage.schema import get_db_connection, init_db
from refinery.storage.similarity import DecisionIndex, cosine, generate_embedding


def _raw_insert(db_path, collection, record_id, payload):
    conn = get_db_connection(db_path)
    try:
        conn.execute(
            "INSERT INTO records (collection, record_id, payload, created_at, updated_at) "
            "VALUES (?, ?, ?, '2026-03-01', '2026-03-01')",
            (collection, record_id, payload),
        )
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def store(db_path):
    return RecordStore(db_path)


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
class TestSchema:

    def test_init_creates_tables(self, db_path):
        tables = init_db(db_path)
        for table in ("records", "artifacts", "audit_trail", "vectors"):
            assert table in tables

    def test_init_is_idempotent(self, db_path):
        assert init_db(db_path) == init_db(db_path)


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------
class TestRecordStore:
    """CRUD plus corrupt-record tolerance."""

    def test_insert_and_get_model(self, store):
        proposal = make_proposal(proposal_id="p-1")
        store.insert("proposals", "p-1", proposal.to_dict())
        loaded = store.get("proposals", "p-1", model=ImprovementProposal)
        assert loaded == proposal

    def test_duplicate_insert_raises(self, store):
        store.insert("proposals", "p-1", {"a": 1})
        with pytest.raises(RefineryPermanentError):
            store.insert("proposals", "p-1", {"a": 2})

    def test_upsert_replaces(self, store):
        store.upsert("servers", "s-1", {"name": "one"})
        store.upsert("servers", "s-1", {"name": "two"})
        assert store.get("servers", "s-1") == {"name": "two"}
        assert store.count("servers") == 1

    def test_update_merges(self, store):
        store.insert("releases", "r-1", {"status": "planning", "version": "1.0.0"})
        merged = store.update("releases", "r-1", {"status": "candidate"})
        assert merged == {"status": "candidate", "version": "1.0.0"}
        assert store.get("releases", "r-1")["status"] == "candidate"

    def test_update_missing_returns_none(self, store):
        assert store.update("releases", "nope", {"status": "candidate"}) is None
        assert store.has("releases", "nope") is False

    def test_corrupt_records_are_skipped_and_counted(self, store, db_path):
        store.insert("proposals", "p-1", make_proposal(proposal_id="p-1").to_dict())
        _raw_insert(db_path, "proposals", "p-bad-json", "{not json")
        bad_enum = make_proposal(proposal_id="p-bad-enum").to_dict()
        bad_enum["status"] = "vibing"
        _raw_insert(db_path, "proposals", "p-bad-enum", json.dumps(bad_enum))

        result = store.scan("proposals", model=ImprovementProposal)
        assert [p.proposal_id for p in result.items] == ["p-1"]
        assert result.skipped == 2

    def test_corrupt_record_reads_as_absent(self, store, db_path):
        _raw_insert(db_path, "proposals", "p-bad", "[1, 2]")
        assert store.get("proposals", "p-bad") is None
        assert store.has("proposals", "p-bad") is True

    def test_scan_keeps_insertion_order(self, store):
        for record_id in ("zeta", "alpha", "mid"):
            store.insert("releases", record_id, {"id": record_id})
        store.upsert("releases", "zeta", {"id": "zeta", "status": "candidate"})
        assert [r["id"] for r in store.list("releases")] == ["zeta", "alpha", "mid"]

    def test_predicate_filters(self, store):
        for i, status in enumerate(("draft", "approved", "approved")):
            store.insert("proposals", f"p-{i}",
                         make_proposal(proposal_id=f"p-{i}", status=status).to_dict())
        approved = store.list("proposals", model=ImprovementProposal,
                              predicate=lambda p: p.status == "approved")
        assert [p.proposal_id for p in approved] == ["p-1", "p-2"]


class TestBuildRecord:

    def test_builds_model(self):
        proposal = make_proposal(proposal_id="p-1")
        assert build_record(proposal.to_dict(), ImprovementProposal) == proposal

    @pytest.mark.parametrize("payload", [[1, 2], "text", {"title": "no id"}])
    def test_bad_shapes_raise_one_error_type(self, payload):
        with pytest.raises(SchemaValidationError):
            build_record(payload, ImprovementProposal)


class TestArtifacts:

    def test_round_trip_with_hash(self, store):
        meta = store.store_artifact("releases/r-1/changelog", "# 1.0.0\n", tags={"version": "1.0.0"})
        assert meta["size_bytes"] == 8
        loaded = store.load_artifact("releases/r-1/changelog")
        assert loaded["text"] == "# 1.0.0\n"
        assert loaded["meta"]["content_hash"] == meta["content_hash"]
        assert loaded["meta"]["tags"] == {"version": "1.0.0"}

    def test_missing_artifact(self, store):
        assert store.load_artifact("nope") is None

    def test_tampered_artifact_fails_integrity(self, store, db_path):
        store.store_artifact("a-1", "original")
        conn = get_db_connection(db_path)
        try:
            conn.execute("UPDATE artifacts SET content = 'edited' WHERE artifact_id = 'a-1'")
            conn.commit()
        finally:
            conn.close()
        with pytest.raises(RefineryPermanentError):
            store.load_artifact("a-1")

    def test_invalid_category(self, store):
        with pytest.raises(ValueError):
            store.store_artifact("a-1", "text", category="screenshot")


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------
class TestAuditLog:
    """Append-only, hash-chained entries."""

    def test_record_links_to_previous(self, audit):
        first = audit.record("proposal.triage", "triage_engine", "proposal", "p-1", {"score": 0.5})
        second = audit.record("proposal.status", "operator", "proposal", "p-1")
        assert first["prev_hash"] == "0" * 64
        assert second["prev_hash"] == first["entry_hash"]

    def test_invalid_action(self, audit):
        with pytest.raises(ValueError):
            audit.record("proposal.deleted", "operator", "proposal", "p-1")

    def test_query_filters_newest_first(self, audit):
        audit.record("proposal.triage", "triage_engine", "proposal", "p-1")
        audit.record("proposal.triage", "triage_engine", "proposal", "p-2")
        audit.record("delivery.plan", "planner", "delivery_plan", "plan-1")

        entries = audit.query(action="proposal.triage")
        assert [e["target_id"] for e in entries] == ["p-2", "p-1"]
        assert audit.query(target_type="delivery_plan")[0]["target_id"] == "plan-1"
        assert len(audit.query(limit=2)) == 2

    def test_correlation_id_from_scope(self, audit):
        with correlation_scope("cid-1"):
            audit.record("proposal.triage", "triage_engine", "proposal", "p-1")
        assert audit.query(correlation_id="cid-1")[0]["target_id"] == "p-1"

    def test_stats(self, audit):
        audit.record("proposal.triage", "triage_engine", "proposal", "p-1")
        audit.record("delivery.plan", "planner", "delivery_plan", "plan-1")
        stats = audit.stats()
        assert stats["total_entries"] == 2
        assert stats["actions_breakdown"] == {"delivery.plan": 1, "proposal.triage": 1}
        assert stats["recent_24h"] == 2

    def test_chain_verifies(self, audit):
        for i in range(3):
            audit.record("proposal.triage", "triage_engine", "proposal", f"p-{i}")
        assert audit.verify_chain() == {"valid": True, "entries_checked": 3, "first_invalid": None}

    def test_empty_chain_is_valid(self, audit):
        assert audit.verify_chain()["valid"] is True

    def test_tampering_breaks_chain(self, audit, db_path):
        audit.record("proposal.triage", "triage_engine", "proposal", "p-0")
        target = audit.record("proposal.triage", "triage_engine", "proposal", "p-1", {"score": 0.2})
        audit.record("proposal.triage", "triage_engine", "proposal", "p-2")

        conn = get_db_connection(db_path)
        try:
            conn.execute("UPDATE audit_trail SET details = ? WHERE entry_id = ?",
                         ('{"score": 0.9}', target["entry_id"]))
            conn.commit()
        finally:
            conn.close()

        result = AuditLog(db_path).verify_chain()
        assert result["valid"] is False
        assert result["first_invalid"] == target["entry_id"]
        assert result["entries_checked"] == 2


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------
class TestSimilarity:

    def test_empty_text_embeds_to_zeros(self):
        assert not any(generate_embedding(""))

    def test_embedding_is_normalized(self):
        emb = generate_embedding("keep stdio transport")
        assert sum(v * v for v in emb) == pytest.approx(1.0)

    def test_cosine_of_mismatched_lengths(self):
        assert cosine([1.0, 0.0], [1.0]) == 0.0

    def test_index_ranks_by_similarity(self, db_path):
        index = DecisionIndex(db_path)
        index.index("adr:a", "keep stdio transport", metadata={"adr_id": "a"})
        index.index("adr:b", "cache upstream schema lookups", metadata={"adr_id": "b"})

        matches = index.query("keep stdio transport", k=2)
        assert matches[0].entry_id == "adr:a"
        assert matches[0].similarity == pytest.approx(1.0)
        assert matches[0].metadata == {"adr_id": "a"}
        assert matches[0].similarity > matches[1].similarity
        assert len(index.query("keep stdio transport", k=1)) == 1

    def test_reindex_replaces_entry(self, db_path):
        index = DecisionIndex(db_path)
        index.index("adr:a", "keep stdio transport")
        index.index("adr:a", "adopt http transport")
        assert index.stats() == {"total": 1, "by_namespace": {"decisions": 1}}

    def test_namespaces_are_isolated(self, db_path):
        DecisionIndex(db_path).index("adr:a", "keep stdio transport")
        assert DecisionIndex(db_path, namespace="other").query("keep stdio transport", k=3) == []
