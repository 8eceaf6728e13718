#!/usr/bin/env python3
# CUI // SP-CTI
"""Release agent: semantic versioning, changelogs and the release lifecycle.

Lifecycle:
    planning -> candidate -> staging -> canary -> released
    candidate | staging | canary | released -> rolled_back   (terminal)

Refused transitions are returned as TransitionResult(success=False) and
change nothing. Every accepted transition, rollbacks included, is written
to the audit trail. A missing delivery plan or release is a programmer
error and raises RecordNotFoundError.

Usage:
    python -m refinery.delivery.release_agent --create --server-id srv-1 --plan-id <plan_id>
    python -m refinery.delivery.release_agent --advance <release_id> --to candidate
    python -m refinery.delivery.release_agent --rollback <release_id> --reason "error spike"
    python -m refinery.delivery.release_agent --list --server-id srv-1 --json
"""

import argparse
import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from refinery.compat.datetime_utils import to_iso, utc_now
from refinery.config import RefineryConfig, load_config
from refinery.resilience.correlation import correlation_scope, get_correlation_id
from refinery.resilience.errors import RecordNotFoundError, RefineryError
from refinery.schemas.core import ImprovementProposal
from refinery.schemas.delivery import ReleaseRecord, TransitionResult

logger = logging.getLogger("refinery.delivery.release")

INITIAL_VERSION = "0.0.0"

VALID_TRANSITIONS: Dict[str, tuple] = {
    "planning": ("candidate",),
    "candidate": ("staging", "rolled_back"),
    "staging": ("canary", "rolled_back"),
    "canary": ("released", "rolled_back"),
    "released": ("rolled_back",),
    "rolled_back": (),
}

CATEGORY_LABELS = {
    "security": "Security",
    "behavioral": "Features & Improvements",
    "refactor": "Refactoring",
    "dependency": "Dependencies",
    "docs": "Documentation",
    "prompt_only": "Prompt Updates",
}

BUMP_TYPES = ("major", "minor", "patch")


def semver_inc(version: Optional[str], bump_type: str) -> str:
    """Increment ``version`` (missing parts count as 0) by ``bump_type``."""
    if bump_type not in BUMP_TYPES:
        raise ValueError(f"Invalid bump type '{bump_type}'. Valid: {BUMP_TYPES}")
    parts = [int(p) for p in (version or INITIAL_VERSION).split(".")[:3]]
    parts += [0] * (3 - len(parts))
    major, minor, patch = parts
    if bump_type == "major":
        return f"{major + 1}.0.0"
    if bump_type == "minor":
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def determine_bump_type(proposals: Sequence[ImprovementProposal]) -> str:
    """major for critical or behavioral changes, minor for security, else patch."""
    if any(p.risk_level == "critical" or p.category == "behavioral" for p in proposals):
        return "major"
    if any(p.category in ("behavioral", "security") for p in proposals):
        return "minor"
    return "patch"


def generate_changelog(version: str, previous_version: str,
                       proposals: Sequence[ImprovementProposal],
                       date: Optional[str] = None) -> str:
    """Markdown changelog grouped by category in first-seen order."""
    date = date or utc_now().date().isoformat()
    grouped: Dict[str, List[ImprovementProposal]] = {}
    for p in proposals:
        grouped.setdefault(p.category, []).append(p)

    out = f"# {version} ({date})\n\n"
    out += f"Previous version: {previous_version}\n\n"
    for category, items in grouped.items():
        out += f"## {CATEGORY_LABELS.get(category, category)}\n\n"
        for item in items:
            out += f"- {item.title} ({item.risk_level} risk)\n"
            first_line = item.description.split("\n")[0]
            out += f"  - {first_line}\n"
        out += "\n"
    out += "---\n*Generated by Refinery*\n"
    return out


class ReleaseAgent:
    """Creates releases from delivery plans and drives their lifecycle."""

    def __init__(self, db, audit, config: Optional[RefineryConfig] = None):
        self.db = db
        self.audit = audit
        self.config = config or RefineryConfig()

    def _plan_proposals(self, proposal_ids: Sequence[str]) -> List[ImprovementProposal]:
        proposals = []
        for proposal_id in proposal_ids:
            proposal = self.db.get_proposal(proposal_id)
            if proposal is not None:
                proposals.append(proposal)
        return proposals

    def create_release(
        self,
        target_server_id: str,
        plan_id: str,
        pr_ids: Optional[Sequence[str]] = None,
        version_bump: Optional[str] = None,
        custom_changelog: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReleaseRecord:
        """Create a release in ``planning`` from a stored delivery plan."""
        now = now or utc_now()
        plan = self.db.get_delivery_plan(plan_id)
        if plan is None:
            raise RecordNotFoundError("delivery_plan", plan_id)

        previous = self.db.get_latest_release(target_server_id)
        previous_version = previous.version if previous is not None else INITIAL_VERSION

        proposals = self._plan_proposals(plan.proposals)
        bump_type = version_bump or determine_bump_type(proposals)
        version = semver_inc(previous_version, bump_type)
        changelog = (custom_changelog if custom_changelog is not None
                     else generate_changelog(version, previous_version, proposals,
                                             now.date().isoformat()))

        release = ReleaseRecord(
            release_id=str(uuid.uuid4()),
            target_server_id=target_server_id,
            version=version,
            previous_version=previous_version,
            plan_id=plan_id,
            pr_ids=list(pr_ids or []),
            proposal_ids=list(plan.proposals),
            changelog=changelog,
            status="planning",
            scorecard_at_release=self.db.get_latest_scorecard(target_server_id),
            created_at=to_iso(now),
        )
        self.db.insert_release(release)

        self.db.store_artifact(
            f"releases/{release.release_id}/changelog", changelog,
            content_type="text/markdown", category="report",
            tags={"version": version, "server_id": target_server_id},
        )
        self.audit.record(
            "delivery.release_created", "release_agent", "release", release.release_id,
            {
                "version": version,
                "previous_version": previous_version,
                "bump_type": bump_type,
                "proposal_count": len(proposals),
            },
        )
        logger.info("Release %s created for %s (%s -> %s, %s)",
                    release.release_id, target_server_id, previous_version, version, bump_type)
        return release

    def advance_release(self, release_id: str, target_status: str) -> TransitionResult:
        """Move a release to ``target_status`` if the lifecycle allows it."""
        return self._transition(release_id, target_status)

    def rollback_release(self, release_id: str, reason: str) -> TransitionResult:
        """Roll a release back, recording ``reason``. Refused from ``planning``."""
        return self._transition(release_id, "rolled_back", reason=reason)

    def _transition(self, release_id: str, target_status: str,
                    reason: Optional[str] = None) -> TransitionResult:
        with correlation_scope(get_correlation_id()):
            release = self.db.get_release(release_id)
            if release is None:
                raise RecordNotFoundError("release", release_id)

            allowed = list(VALID_TRANSITIONS.get(release.status, ()))
            if target_status not in allowed:
                message = (f'Cannot transition from "{release.status}" to "{target_status}". '
                           f"Allowed: {', '.join(allowed)}")
                logger.info("Release %s: %s", release_id, message)
                return TransitionResult(
                    success=False,
                    message=message,
                    from_status=release.status,
                    to_status=target_status,
                    allowed=allowed,
                )

            self.db.update_release_status(release_id, target_status, rollback_reason=reason)

            details = {
                "from_status": release.status,
                "to_status": target_status,
                "version": release.version,
            }
            if reason is not None:
                details["reason"] = reason
            action = "delivery.rolled_back" if target_status == "rolled_back" else "delivery.released"
            self.audit.record(action, "release_agent", "release", release_id, details)

            logger.info("Release %s: %s -> %s", release.version, release.status, target_status)
            return TransitionResult(
                success=True,
                message=f"Release {release.version} advanced to {target_status}",
                from_status=release.status,
                to_status=target_status,
                allowed=allowed,
            )


def _print_release(release: ReleaseRecord):
    print(f"{release.release_id}  v{release.version} [{release.status}] "
          f"server={release.target_server_id} (prev {release.previous_version})")


def main():
    parser = argparse.ArgumentParser(description="Manage target server releases")
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--create", action="store_true", help="Create a release from a plan")
    action.add_argument("--advance", metavar="RELEASE_ID", help="Advance a release")
    action.add_argument("--rollback", metavar="RELEASE_ID", help="Roll back a release")
    action.add_argument("--list", action="store_true", help="List releases")
    action.add_argument("--changelog", metavar="RELEASE_ID", help="Print a release changelog")
    parser.add_argument("--server-id", help="Target server id")
    parser.add_argument("--plan-id", help="Delivery plan id (with --create)")
    parser.add_argument("--pr", action="append", default=[], help="PR id (repeatable)")
    parser.add_argument("--bump", choices=BUMP_TYPES, help="Force the version bump")
    parser.add_argument("--to", dest="target_status", help="Target status (with --advance)")
    parser.add_argument("--reason", default="", help="Rollback reason")
    parser.add_argument("--config", type=Path, default=None, help="Config file path")
    parser.add_argument("--db-path", type=Path, default=None, help="Database path")
    parser.add_argument("--json", action="store_true", dest="json_output", help="JSON output")
    args = parser.parse_args()

    from refinery.resilience.correlation import configure_cli_logging
    configure_cli_logging()

    from refinery.storage.audit_log import AuditLog
    from refinery.storage.database import RefineryDB

    db = RefineryDB(args.db_path)
    agent = ReleaseAgent(db, AuditLog(args.db_path), load_config(args.config))

    try:
        if args.list:
            releases = db.list_releases(args.server_id)
            if args.json_output:
                print(json.dumps([r.to_dict() for r in releases], indent=2))
            else:
                for r in releases:
                    _print_release(r)
            return

        if args.changelog:
            release = db.get_release(args.changelog)
            if release is None:
                raise RecordNotFoundError("release", args.changelog)
            print(release.changelog)
            return

        if args.create:
            if not args.server_id or not args.plan_id:
                parser.error("--create requires --server-id and --plan-id")
            release = agent.create_release(args.server_id, args.plan_id, args.pr,
                                           version_bump=args.bump)
            if args.json_output:
                print(json.dumps(release.to_dict(), indent=2))
            else:
                _print_release(release)
            return

        if args.advance:
            if not args.target_status:
                parser.error("--advance requires --to")
            result = agent.advance_release(args.advance, args.target_status)
        else:
            if not args.reason:
                parser.error("--rollback requires --reason")
            result = agent.rollback_release(args.rollback, args.reason)

        if args.json_output:
            print(json.dumps(result.to_dict(), indent=2))
        else:
            print(("OK: " if result.success else "REFUSED: ") + result.message)
        if not result.success:
            sys.exit(2)

    except RefineryError as e:
        if args.json_output:
            print(json.dumps({"error": str(e)}, indent=2))
        else:
            print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
