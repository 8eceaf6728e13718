#!/usr/bin/env python3
# CUI // SP-CTI
"""Append-only, hash-chained audit trail.

No UPDATE or DELETE operations; all entries are immutable. Each entry
stores the hash of its predecessor and its own sha256 over the canonical
JSON of the entry concatenated with that previous hash, so any edit or
removal breaks ``verify_chain``.

Usage:
    python -m refinery.storage.audit_log --action proposal.triage --limit 20
    python -m refinery.storage.audit_log --target-id <release_id> --json
    python -m refinery.storage.audit_log --stats
    python -m refinery.storage.audit_log --verify
"""

import argparse
import hashlib
import json
import logging
import sqlite3
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from refinery.compat.datetime_utils import parse_iso, to_iso, utc_now, utc_now_iso
from refinery.resilience.correlation import generate_correlation_id, get_correlation_id
from refinery.storage.schema import get_db_connection

logger = logging.getLogger("refinery.audit")

GENESIS_HASH = "0" * 64

VALID_ACTIONS = (
    "research.start", "research.store", "consensus.compute",
    "proposal.triage", "proposal.approve", "proposal.status",
    "adr.record", "adr.supersede",
    "scorecard.capture",
    "oscillation.blocked",
    "delivery.plan", "delivery.release_created",
    "delivery.released", "delivery.rolled_back", "delivery.tests_run",
    "governance.approval", "governance.escalation", "policy.violation",
    "research_ops.case_created", "research_ops.case_advanced",
    "research_ops.proposal_frozen", "research_ops.case_completed",
    "research_ops.case_rejected",
)

# Hash chaining reads the last hash before writing; appends must not interleave.
_append_lock = threading.Lock()

_ENTRY_FIELDS = (
    "entry_id", "action", "actor", "target_type", "target_id",
    "details", "timestamp", "correlation_id",
)


def compute_entry_hash(entry: Dict[str, Any], prev_hash: str) -> str:
    """sha256 over the canonical JSON of ``entry`` followed by ``prev_hash``."""
    canonical = json.dumps(
        {k: entry[k] for k in _ENTRY_FIELDS}, sort_keys=True, default=str,
    )
    return hashlib.sha256((canonical + prev_hash).encode("utf-8")).hexdigest()


def _row_to_entry(row: sqlite3.Row) -> Dict[str, Any]:
    entry = dict(row)
    entry["details"] = json.loads(entry["details"]) if entry.get("details") else {}
    return entry


class AuditLog:
    """Writer and reader for the ``audit_trail`` table."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = db_path

    def record(
        self,
        action: str,
        actor: str,
        target_type: str,
        target_id: str,
        details: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append an immutable audit entry and return it (with hashes)."""
        if action not in VALID_ACTIONS:
            raise ValueError(f"Invalid audit action '{action}'. Valid: {VALID_ACTIONS}")

        # Auto-populate correlation_id from the active scope
        if correlation_id is None:
            correlation_id = get_correlation_id() or generate_correlation_id()

        entry = {
            "entry_id": str(uuid.uuid4()),
            "action": action,
            "actor": actor,
            "target_type": target_type,
            "target_id": target_id,
            "details": details or {},
            "timestamp": utc_now_iso(),
            "correlation_id": correlation_id,
        }

        with _append_lock:
            conn = get_db_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT entry_hash FROM audit_trail ORDER BY seq DESC LIMIT 1"
                ).fetchone()
                prev_hash = row["entry_hash"] if row else GENESIS_HASH
                entry_hash = compute_entry_hash(entry, prev_hash)
                conn.execute(
                    """INSERT INTO audit_trail
                       (entry_id, action, actor, target_type, target_id, details,
                        timestamp, correlation_id, prev_hash, entry_hash)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry["entry_id"], action, actor, target_type, target_id,
                        json.dumps(entry["details"], default=str),
                        entry["timestamp"], correlation_id, prev_hash, entry_hash,
                    ),
                )
                conn.commit()
            finally:
                conn.close()

        entry["prev_hash"] = prev_hash
        entry["entry_hash"] = entry_hash
        logger.debug("Audit [%s] %s %s/%s", action, actor, target_type, target_id)
        return entry

    def query(
        self,
        action: Optional[str] = None,
        actor: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Return matching entries, newest first."""
        clauses = []
        params: List[Any] = []
        for column, value in (
            ("action", action), ("actor", actor), ("target_type", target_type),
            ("target_id", target_id), ("correlation_id", correlation_id),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if since:
            clauses.append("timestamp >= ?")
            params.append(since)
        if until:
            clauses.append("timestamp <= ?")
            params.append(until)

        sql = "SELECT * FROM audit_trail"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY seq DESC LIMIT ?"
        params.append(limit)

        conn = get_db_connection(self.db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [_row_to_entry(r) for r in rows]

    def stats(self, now=None) -> Dict[str, Any]:
        """Total entries, per-action breakdown and entries in the last 24h."""
        now = now or utc_now()
        since_24h = to_iso(now - timedelta(hours=24))
        conn = get_db_connection(self.db_path)
        try:
            total = conn.execute("SELECT COUNT(*) AS n FROM audit_trail").fetchone()["n"]
            breakdown = {
                r["action"]: r["n"]
                for r in conn.execute(
                    "SELECT action, COUNT(*) AS n FROM audit_trail GROUP BY action ORDER BY action"
                ).fetchall()
            }
            timestamps = [
                r["timestamp"] for r in conn.execute("SELECT timestamp FROM audit_trail").fetchall()
            ]
        finally:
            conn.close()
        cutoff = parse_iso(since_24h)
        recent = sum(1 for ts in timestamps if parse_iso(ts) >= cutoff)
        return {"total_entries": total, "actions_breakdown": breakdown, "recent_24h": recent}

    def verify_chain(self) -> Dict[str, Any]:
        """Recompute every hash in order.

        Returns ``{"valid": bool, "entries_checked": int, "first_invalid": entry_id|None}``.
        """
        conn = get_db_connection(self.db_path)
        try:
            rows = conn.execute("SELECT * FROM audit_trail ORDER BY seq ASC").fetchall()
        finally:
            conn.close()

        prev_hash = GENESIS_HASH
        checked = 0
        for row in rows:
            entry = _row_to_entry(row)
            checked += 1
            if entry["prev_hash"] != prev_hash or compute_entry_hash(entry, prev_hash) != entry["entry_hash"]:
                logger.warning("Audit chain broken at entry %s (seq %s)", entry["entry_id"], entry["seq"])
                return {"valid": False, "entries_checked": checked, "first_invalid": entry["entry_id"]}
            prev_hash = entry["entry_hash"]
        return {"valid": True, "entries_checked": checked, "first_invalid": None}


def _print_human(entries: List[Dict[str, Any]]):
    if not entries:
        print("No audit entries found.")
        return
    for e in entries:
        print(f"{e['timestamp']}  [{e['action']}] {e['actor']} -> "
              f"{e['target_type']}/{e['target_id']}  ({e['correlation_id']})")
        if e.get("details"):
            print(f"    {json.dumps(e['details'], default=str)}")


def main():
    parser = argparse.ArgumentParser(description="Query the Refinery audit trail")
    parser.add_argument("--action", choices=VALID_ACTIONS, help="Filter by action")
    parser.add_argument("--actor", help="Filter by actor")
    parser.add_argument("--target-type", help="Filter by target type")
    parser.add_argument("--target-id", help="Filter by target id")
    parser.add_argument("--correlation-id", help="Filter by correlation id")
    parser.add_argument("--since", help="ISO timestamp lower bound")
    parser.add_argument("--until", help="ISO timestamp upper bound")
    parser.add_argument("--limit", type=int, default=100, help="Max entries")
    parser.add_argument("--stats", action="store_true", help="Show summary statistics")
    parser.add_argument("--verify", action="store_true", help="Verify the hash chain")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    audit = AuditLog(args.db_path)
    if args.verify:
        result = audit.verify_chain()
        if args.json_output:
            print(json.dumps(result, indent=2))
        else:
            status = "VALID" if result["valid"] else f"BROKEN at {result['first_invalid']}"
            print(f"Audit chain {status} ({result['entries_checked']} entries checked)")
        raise SystemExit(0 if result["valid"] else 1)

    if args.stats:
        result = audit.stats()
        if args.json_output:
            print(json.dumps(result, indent=2))
        else:
            print(f"Total entries: {result['total_entries']}  (last 24h: {result['recent_24h']})")
            for action, count in result["actions_breakdown"].items():
                print(f"  {action:<32} {count}")
        return

    entries = audit.query(
        action=args.action, actor=args.actor, target_type=args.target_type,
        target_id=args.target_id, correlation_id=args.correlation_id,
        since=args.since, until=args.until, limit=args.limit,
    )
    if args.json_output:
        print(json.dumps(entries, indent=2, default=str))
    else:
        _print_human(entries)


if __name__ == "__main__":
    main()
