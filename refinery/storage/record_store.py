#!/usr/bin/env python3
# CUI // SP-CTI
"""Keyed typed record store backed by SQLite.

Each collection holds JSON payloads keyed by a record id. Reads that build
schema models skip corrupt payloads (bad JSON or a shape the model rejects)
rather than failing the whole listing; ``scan`` reports how many were
skipped so the loss is observable.

Usage:
    from refinery.storage.record_store import RecordStore
    from refinery.schemas.delivery import ReleaseRecord

    store = RecordStore(db_path)
    store.upsert("releases", release.release_id, release.to_dict())
    result = store.scan("releases", model=ReleaseRecord)
    print(len(result.items), result.skipped)
"""

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type, Union

from refinery.compat.datetime_utils import utc_now_iso
from refinery.resilience.errors import RefineryPermanentError, RefineryTransientError
from refinery.schemas.validation import SchemaValidationError, build_record
from refinery.storage.schema import get_db_connection

logger = logging.getLogger("refinery.storage")

ARTIFACT_CATEGORIES = ("raw_response", "ci_log", "package", "sbom", "provenance", "diff", "report")


@dataclass
class ListResult:
    """Records read from a collection plus the count of unreadable ones."""

    items: List[Any] = field(default_factory=list)
    skipped: int = 0


def _translate(exc: sqlite3.OperationalError) -> Exception:
    if "locked" in str(exc).lower() or "busy" in str(exc).lower():
        return RefineryTransientError(str(exc), service="storage")
    return RefineryPermanentError(str(exc), service="storage")


class RecordStore:
    """Synchronous CRUD over the ``records`` and ``artifacts`` tables."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_path)

    def _execute(self, sql: str, params: tuple = ()) -> None:
        conn = self._connect()
        try:
            conn.execute(sql, params)
            conn.commit()
        except sqlite3.OperationalError as exc:
            raise _translate(exc) from exc
        finally:
            conn.close()

    def _fetch(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.OperationalError as exc:
            raise _translate(exc) from exc
        finally:
            conn.close()

    # -- Decoding -------------------------------------------------------------

    @staticmethod
    def _decode(row: sqlite3.Row, model: Optional[Type]):
        """Decode one payload; raises SchemaValidationError when corrupt."""
        try:
            data = json.loads(row["payload"])
        except (TypeError, ValueError) as exc:
            raise SchemaValidationError(f"Unparseable payload: {exc}")
        if model is None:
            if not isinstance(data, dict):
                raise SchemaValidationError(f"Expected dict, got {type(data).__name__}")
            return data
        return build_record(data, model)

    # -- Reads ----------------------------------------------------------------

    def get(self, collection: str, record_id: str, model: Optional[Type] = None):
        """Return one record (dict, or ``model`` instance) or None.

        A corrupt record reads as absent and logs a warning.
        """
        rows = self._fetch(
            "SELECT payload FROM records WHERE collection = ? AND record_id = ?",
            (collection, record_id),
        )
        if not rows:
            return None
        try:
            return self._decode(rows[0], model)
        except SchemaValidationError as exc:
            logger.warning("Corrupt record %s/%s: %s", collection, record_id, exc)
            return None

    def scan(
        self,
        collection: str,
        model: Optional[Type] = None,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> ListResult:
        """Read every record in ``collection`` in insertion order, skipping corrupt ones."""
        rows = self._fetch(
            "SELECT record_id, payload FROM records WHERE collection = ? ORDER BY rowid",
            (collection,),
        )
        result = ListResult()
        for row in rows:
            try:
                item = self._decode(row, model)
            except SchemaValidationError as exc:
                result.skipped += 1
                logger.warning("Skipping corrupt record %s/%s: %s", collection, row["record_id"], exc)
                continue
            if predicate is None or predicate(item):
                result.items.append(item)
        if result.skipped:
            logger.info("Scan of %s skipped %d corrupt record(s)", collection, result.skipped)
        return result

    def list(self, collection: str, model: Optional[Type] = None,
             predicate: Optional[Callable[[Any], bool]] = None) -> List[Any]:
        return self.scan(collection, model=model, predicate=predicate).items

    def count(self, collection: str, model: Optional[Type] = None,
              predicate: Optional[Callable[[Any], bool]] = None) -> int:
        return len(self.scan(collection, model=model, predicate=predicate).items)

    def has(self, collection: str, record_id: str) -> bool:
        rows = self._fetch(
            "SELECT 1 FROM records WHERE collection = ? AND record_id = ?",
            (collection, record_id),
        )
        return bool(rows)

    # -- Writes ---------------------------------------------------------------

    def insert(self, collection: str, record_id: str, payload: Dict[str, Any]) -> None:
        """Insert a new record. Raises RefineryPermanentError if the id exists."""
        now = utc_now_iso()
        try:
            self._execute(
                "INSERT INTO records (collection, record_id, payload, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (collection, record_id, json.dumps(payload, default=str), now, now),
            )
        except sqlite3.IntegrityError:
            raise RefineryPermanentError(
                f"{collection} '{record_id}' already exists", service="storage"
            )

    def upsert(self, collection: str, record_id: str, payload: Dict[str, Any]) -> None:
        now = utc_now_iso()
        self._execute(
            "INSERT INTO records (collection, record_id, payload, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(collection, record_id) DO UPDATE SET "
            "payload = excluded.payload, updated_at = excluded.updated_at",
            (collection, record_id, json.dumps(payload, default=str), now, now),
        )

    def update(self, collection: str, record_id: str,
               updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Shallow-merge ``updates`` into an existing record.

        Returns the merged payload, or None when the record is missing or
        corrupt (nothing is written in that case).
        """
        existing = self.get(collection, record_id)
        if existing is None:
            return None
        existing.update(updates)
        self._execute(
            "UPDATE records SET payload = ?, updated_at = ? WHERE collection = ? AND record_id = ?",
            (json.dumps(existing, default=str), utc_now_iso(), collection, record_id),
        )
        return existing

    # -- Artifacts ------------------------------------------------------------

    def store_artifact(
        self,
        artifact_id: str,
        content: str,
        content_type: str = "text/markdown",
        category: str = "report",
        tags: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Store a text artifact under its id with a sha256 content hash."""
        if category not in ARTIFACT_CATEGORIES:
            raise ValueError(f"Invalid artifact category '{category}'. Valid: {ARTIFACT_CATEGORIES}")
        encoded = content.encode("utf-8")
        meta = {
            "artifact_id": artifact_id,
            "content_hash": hashlib.sha256(encoded).hexdigest(),
            "content_type": content_type,
            "category": category,
            "tags": tags or {},
            "size_bytes": len(encoded),
            "created_at": utc_now_iso(),
        }
        self._execute(
            "INSERT OR REPLACE INTO artifacts "
            "(artifact_id, content_hash, content_type, category, tags, size_bytes, content, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (artifact_id, meta["content_hash"], content_type, category,
             json.dumps(meta["tags"]), meta["size_bytes"], content, meta["created_at"]),
        )
        logger.debug("Stored artifact %s (%d bytes)", artifact_id, meta["size_bytes"])
        return meta

    def load_artifact(self, artifact_id: str) -> Optional[Dict[str, Any]]:
        """Load an artifact and verify its content hash.

        Returns a dict with ``meta`` and ``text``, or None if absent. Raises
        RefineryPermanentError when the stored content no longer matches.
        """
        rows = self._fetch("SELECT * FROM artifacts WHERE artifact_id = ?", (artifact_id,))
        if not rows:
            return None
        row = dict(rows[0])
        text = row.pop("content")
        actual = hashlib.sha256(text.encode("utf-8")).hexdigest()
        if actual != row["content_hash"]:
            raise RefineryPermanentError(
                f"Artifact integrity check failed for {artifact_id}: "
                f"expected {row['content_hash']}, got {actual}",
                service="storage",
            )
        row["tags"] = json.loads(row["tags"]) if row.get("tags") else {}
        return {"meta": row, "text": text}
