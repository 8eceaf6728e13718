#!/usr/bin/env python3
# CUI // SP-CTI
"""Domain data access for the Decision and Delivery planes.

Thin typed accessors over RecordStore collections. Every reader builds the
schema model and skips corrupt records; listing helpers sort the way the
callers expect (newest first for scorecards and releases, priority for
proposals).

Usage:
    from refinery.storage.database import RefineryDB

    db = RefineryDB(db_path)
    adrs = db.list_active_adrs()
    scorecard = db.get_latest_scorecard("server-1")
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from refinery.compat.datetime_utils import utc_now_iso
from refinery.schemas.core import (
    PROPOSAL_STATUSES,
    ArchitectureDecisionRecord,
    ConsensusResult,
    ImprovementProposal,
    ScorecardSnapshot,
    TargetServerConfig,
)
from refinery.schemas.decision import PolicyRule
from refinery.schemas.delivery import DeliveryPlan, GovernanceApproval, ReleaseRecord, TestRunRecord
from refinery.schemas.research_ops import ResearchCase
from refinery.storage.record_store import RecordStore

logger = logging.getLogger("refinery.storage")

SERVERS = "servers"
CONSENSUS = "consensus"
PROPOSALS = "proposals"
DECISIONS = "decisions"
POLICIES = "policies"
SCORECARDS = "scorecards"
PLANS = "plans"
RELEASES = "releases"
CASES = "research_cases"
APPROVALS = "approvals"
TEST_RUNS = "test_runs"


def _newest_first(items: list, key) -> list:
    """Sort by ``key`` descending; among equal keys the later-inserted record wins."""
    ranked = list(enumerate(items))
    ranked.sort(key=lambda pair: (key(pair[1]), pair[0]), reverse=True)
    return [item for _, item in ranked]


class RefineryDB:
    """Typed accessors shared by every engine."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None,
                 store: Optional[RecordStore] = None):
        self.store = store or RecordStore(db_path)

    # -- Target servers -------------------------------------------------------

    def upsert_target_server(self, server: TargetServerConfig) -> None:
        if not server.created_at:
            server.created_at = utc_now_iso()
        server.updated_at = utc_now_iso()
        self.store.upsert(SERVERS, server.server_id, server.to_dict())

    def get_target_server(self, server_id: str) -> Optional[TargetServerConfig]:
        return self.store.get(SERVERS, server_id, model=TargetServerConfig)

    def list_target_servers(self) -> List[TargetServerConfig]:
        return self.store.list(SERVERS, model=TargetServerConfig)

    # -- Consensus ------------------------------------------------------------

    def insert_consensus(self, result: ConsensusResult) -> None:
        self.store.insert(CONSENSUS, result.consensus_id, result.to_dict())

    def get_latest_consensus(self, server_id: str) -> Optional[ConsensusResult]:
        results = self.store.list(
            CONSENSUS, model=ConsensusResult,
            predicate=lambda c: c.target_server_id == server_id,
        )
        results = _newest_first(results, key=lambda c: c.computed_at)
        return results[0] if results else None

    # -- Proposals ------------------------------------------------------------

    def insert_proposal(self, proposal: ImprovementProposal) -> None:
        self.store.insert(PROPOSALS, proposal.proposal_id, proposal.to_dict())

    def get_proposal(self, proposal_id: str) -> Optional[ImprovementProposal]:
        return self.store.get(PROPOSALS, proposal_id, model=ImprovementProposal)

    def list_proposals(self, server_id: Optional[str] = None,
                       status: Optional[str] = None) -> List[ImprovementProposal]:
        def _match(p: ImprovementProposal) -> bool:
            if server_id and p.target_server_id != server_id:
                return False
            if status and p.status != status:
                return False
            return True

        proposals = self.store.list(PROPOSALS, model=ImprovementProposal, predicate=_match)
        proposals.sort(key=lambda p: p.priority, reverse=True)
        return proposals

    def update_proposal_status(self, proposal_id: str, status: str) -> bool:
        if status not in PROPOSAL_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Valid: {PROPOSAL_STATUSES}")
        updated = self.store.update(
            PROPOSALS, proposal_id, {"status": status, "updated_at": utc_now_iso()},
        )
        return updated is not None

    # -- ADRs -----------------------------------------------------------------

    def insert_adr(self, adr: ArchitectureDecisionRecord) -> None:
        self.store.insert(DECISIONS, adr.adr_id, adr.to_dict())

    def get_adr(self, adr_id: str) -> Optional[ArchitectureDecisionRecord]:
        return self.store.get(DECISIONS, adr_id, model=ArchitectureDecisionRecord)

    def list_adrs(self, status: Optional[str] = None) -> List[ArchitectureDecisionRecord]:
        return self.store.list(
            DECISIONS, model=ArchitectureDecisionRecord,
            predicate=(lambda a: a.status == status) if status else None,
        )

    def list_active_adrs(self) -> List[ArchitectureDecisionRecord]:
        return self.list_adrs(status="accepted")

    def supersede_adr(self, adr_id: str, new_adr_id: str) -> bool:
        updated = self.store.update(DECISIONS, adr_id, {
            "status": "superseded",
            "superseded_by": new_adr_id,
            "updated_at": utc_now_iso(),
        })
        return updated is not None

    # -- Policies -------------------------------------------------------------

    def insert_policy_rule(self, rule: PolicyRule) -> None:
        if not rule.created_at:
            rule.created_at = utc_now_iso()
        self.store.upsert(POLICIES, rule.rule_id, rule.to_dict())

    def list_policy_rules(self, enabled: Optional[bool] = None) -> List[PolicyRule]:
        return self.store.list(
            POLICIES, model=PolicyRule,
            predicate=(lambda r: r.enabled == enabled) if enabled is not None else None,
        )

    # -- Scorecards -----------------------------------------------------------

    def insert_scorecard(self, snapshot: ScorecardSnapshot) -> None:
        self.store.insert(SCORECARDS, snapshot.scorecard_id, snapshot.to_dict())

    def get_scorecard(self, scorecard_id: str) -> Optional[ScorecardSnapshot]:
        return self.store.get(SCORECARDS, scorecard_id, model=ScorecardSnapshot)

    def get_latest_scorecard(self, server_id: str) -> Optional[ScorecardSnapshot]:
        snapshots = self.store.list(
            SCORECARDS, model=ScorecardSnapshot,
            predicate=lambda s: s.target_server_id == server_id,
        )
        snapshots = _newest_first(snapshots, key=lambda s: s.captured_at)
        return snapshots[0] if snapshots else None

    # -- Delivery plans -------------------------------------------------------

    def insert_delivery_plan(self, plan: DeliveryPlan) -> None:
        self.store.insert(PLANS, plan.plan_id, plan.to_dict())

    def get_delivery_plan(self, plan_id: str) -> Optional[DeliveryPlan]:
        return self.store.get(PLANS, plan_id, model=DeliveryPlan)

    # -- Releases -------------------------------------------------------------

    def insert_release(self, release: ReleaseRecord) -> None:
        self.store.insert(RELEASES, release.release_id, release.to_dict())

    def get_release(self, release_id: str) -> Optional[ReleaseRecord]:
        return self.store.get(RELEASES, release_id, model=ReleaseRecord)

    def list_releases(self, server_id: Optional[str] = None) -> List[ReleaseRecord]:
        releases = self.store.list(
            RELEASES, model=ReleaseRecord,
            predicate=(lambda r: r.target_server_id == server_id) if server_id else None,
        )
        releases = _newest_first(releases, key=lambda r: r.created_at)
        return releases

    def get_latest_release(self, server_id: str) -> Optional[ReleaseRecord]:
        releases = self.list_releases(server_id)
        return releases[0] if releases else None

    def update_release_status(self, release_id: str, status: str,
                              rollback_reason: Optional[str] = None) -> Optional[ReleaseRecord]:
        """Set status, stamping published_at / rolled_back_at as appropriate."""
        now = utc_now_iso()
        updates = {"status": status}
        if status == "released":
            updates["published_at"] = now
        if status == "rolled_back":
            updates["rolled_back_at"] = now
            if rollback_reason is not None:
                updates["rollback_reason"] = rollback_reason
        if self.store.update(RELEASES, release_id, updates) is None:
            return None
        return self.get_release(release_id)

    # -- Test runs ------------------------------------------------------------

    def insert_test_run(self, run: TestRunRecord) -> None:
        self.store.insert(TEST_RUNS, run.run_id, run.to_dict())

    def list_test_runs(self, plan_id: Optional[str] = None,
                       pr_id: Optional[str] = None) -> List[TestRunRecord]:
        """Runs in recording order, optionally narrowed to one plan or PR."""
        def _match(r: TestRunRecord) -> bool:
            if plan_id and r.plan_id != plan_id:
                return False
            if pr_id and r.pr_id != pr_id:
                return False
            return True

        return self.store.list(TEST_RUNS, model=TestRunRecord, predicate=_match)

    # -- Governance approvals -------------------------------------------------

    def insert_governance_approval(self, approval: GovernanceApproval) -> None:
        self.store.insert(APPROVALS, approval.approval_id, approval.to_dict())

    def list_approvals(self, target_type: Optional[str] = None,
                       target_id: Optional[str] = None) -> List[GovernanceApproval]:
        def _match(a: GovernanceApproval) -> bool:
            if target_type and a.target_type != target_type:
                return False
            if target_id and a.target_id != target_id:
                return False
            return True

        return self.store.list(APPROVALS, model=GovernanceApproval, predicate=_match)

    def has_approval(self, target_type: str, target_id: str) -> bool:
        return bool(self.list_approvals(target_type, target_id))

    # -- Research cases -------------------------------------------------------

    def save_case(self, case: ResearchCase) -> None:
        case.updated_at = utc_now_iso()
        self.store.upsert(CASES, case.case_id, case.to_dict())

    def get_case(self, case_id: str) -> Optional[ResearchCase]:
        return self.store.get(CASES, case_id, model=ResearchCase)

    def list_cases(self, status: Optional[str] = None) -> List[ResearchCase]:
        cases = self.store.list(
            CASES, model=ResearchCase,
            predicate=(lambda c: c.status == status) if status else None,
        )
        cases = _newest_first(cases, key=lambda c: c.created_at)
        return cases

    # -- Artifacts ------------------------------------------------------------

    def store_artifact(self, artifact_id: str, content: str, content_type: str = "text/markdown",
                       category: str = "report", tags: Optional[Dict[str, str]] = None) -> dict:
        return self.store.store_artifact(artifact_id, content, content_type, category, tags)

    def load_artifact(self, artifact_id: str) -> Optional[dict]:
        return self.store.load_artifact(artifact_id)
