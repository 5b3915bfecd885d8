"""
Governance Ledger v1.0
======================
Ownership-weighted governance for a common asset.

A registry of stakeholders, each holding an integer share of the asset, and a
proposal store whose proposals pass under a strict dual-majority rule:

  - more than half of all registered stakeholders voted yes (head-count), AND
  - the yes-voters hold more than half of all registered shares (weight).

Consensus is evaluated synchronously after every vote against the registry
totals at that moment, so stakeholders registered after a proposal was
created count toward its denominators.

Features:
  - Append-only stakeholder registry with incrementally maintained totals
  - Sequential proposal ids, one vote per stakeholder per proposal
  - Change notifications (ProposalCreated, Voted, ProposalPassed)
  - Single-lock serialization of every read and write
  - Optional JSON snapshot persistence
  - Optional cap on cumulative shares (off by default)
"""

import json
import os
import threading
from dataclasses import dataclass, asdict, field
from typing import Callable, ClassVar, Dict, List, Optional, Set

import structlog

log = structlog.get_logger(__name__)


# ==========================================
# ERRORS
# ==========================================

class LedgerError(Exception):
    """Base class for rejected ledger operations. Never retryable."""


class DuplicateStakeholderError(LedgerError):
    def __init__(self, identity: str):
        super().__init__(f"Stakeholder '{identity}' is already registered.")
        self.identity = identity


class NotAStakeholderError(LedgerError):
    def __init__(self, identity: str):
        super().__init__(f"'{identity}' is not a registered stakeholder.")
        self.identity = identity


class DuplicateVoteError(LedgerError):
    def __init__(self, identity: str, proposal_id: int):
        super().__init__(f"'{identity}' has already voted on proposal {proposal_id}.")
        self.identity = identity
        self.proposal_id = proposal_id


class AlreadyPassedError(LedgerError):
    def __init__(self, proposal_id: int):
        super().__init__(f"Proposal {proposal_id} has already passed.")
        self.proposal_id = proposal_id


class UnknownProposalError(LedgerError):
    def __init__(self, proposal_id: int):
        super().__init__(f"Proposal {proposal_id} does not exist.")
        self.proposal_id = proposal_id


class ShareCapExceededError(LedgerError):
    def __init__(self, identity: str, share: int, total_shares: int, cap: int):
        super().__init__(
            f"Registering '{identity}' with share {share} would raise total shares "
            f"from {total_shares} to {total_shares + share}, above the cap of {cap}."
        )
        self.identity = identity
        self.share = share
        self.total_shares = total_shares
        self.cap = cap


# Keyed by class name so remote callers can map error payloads back.
ERRORS: Dict[str, type] = {
    cls.__name__: cls
    for cls in (
        DuplicateStakeholderError,
        NotAStakeholderError,
        DuplicateVoteError,
        AlreadyPassedError,
        UnknownProposalError,
        ShareCapExceededError,
    )
}


# ==========================================
# DATA MODEL
# ==========================================

@dataclass(frozen=True)
class Stakeholder:
    identity: str
    share: int


@dataclass
class Proposal:
    id: int
    proposer: str
    description: str
    vote_count: int = 0
    vote_share_weight: int = 0
    passed: bool = False
    executed: bool = False    # reserved; no operation sets it
    has_voted: Set[str] = field(default_factory=set)

    def snapshot(self) -> "ProposalSnapshot":
        return ProposalSnapshot(
            description=self.description,
            vote_count=self.vote_count,
            vote_share_weight=self.vote_share_weight,
            passed=self.passed,
            executed=self.executed,
        )


@dataclass(frozen=True)
class ProposalSnapshot:
    """Read-only projection of a proposal. The default value is the empty record."""
    description: str = ""
    vote_count: int = 0
    vote_share_weight: int = 0
    passed: bool = False
    executed: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


EMPTY_PROPOSAL = ProposalSnapshot()


# ==========================================
# NOTIFICATIONS
# ==========================================

@dataclass(frozen=True)
class ProposalCreated:
    name: ClassVar[str] = "ProposalCreated"
    id: int
    description: str


@dataclass(frozen=True)
class Voted:
    name: ClassVar[str] = "Voted"
    proposal_id: int
    voter: str
    share: int


@dataclass(frozen=True)
class ProposalPassed:
    name: ClassVar[str] = "ProposalPassed"
    id: int


def event_to_dict(event) -> Dict:
    return {"event": event.name, **asdict(event)}


Subscriber = Callable[[object], None]


# ==========================================
# STAKEHOLDER REGISTRY
# ==========================================

class StakeholderRegistry:
    """
    Append-only mapping of identity -> share.
    total_shares is maintained incrementally and never recomputed.
    """

    def __init__(self, max_total_shares: Optional[int] = None):
        self.max_total_shares = max_total_shares
        self._shares: Dict[str, int] = {}
        self._order: List[str] = []
        self.total_shares = 0

    def register(self, identity: str, share: int) -> Stakeholder:
        if not isinstance(identity, str) or not identity:
            raise ValueError("identity must be a non-empty string")
        if isinstance(share, bool) or not isinstance(share, int):
            raise ValueError("share must be an integer")
        if share < 0:
            raise ValueError("share must be non-negative")
        if identity in self._shares:
            raise DuplicateStakeholderError(identity)
        if self.max_total_shares is not None and self.total_shares + share > self.max_total_shares:
            raise ShareCapExceededError(identity, share, self.total_shares, self.max_total_shares)

        self._shares[identity] = share
        self._order.append(identity)
        self.total_shares += share
        return Stakeholder(identity, share)

    def is_stakeholder(self, identity: str) -> bool:
        return identity in self._shares

    def share_of(self, identity: str) -> int:
        return self._shares.get(identity, 0)

    def count(self) -> int:
        return len(self._order)

    def stakeholders(self) -> List[Stakeholder]:
        return [Stakeholder(i, self._shares[i]) for i in self._order]

    # ------ persistence ------

    def to_dict(self) -> Dict:
        return {
            "stakeholders": [[i, self._shares[i]] for i in self._order],
            "total_shares": self.total_shares,
        }

    def restore(self, data: Dict) -> None:
        self._shares = {}
        self._order = []
        for identity, share in data.get("stakeholders", []):
            self._shares[identity] = int(share)
            self._order.append(identity)
        self.total_shares = int(data.get("total_shares", 0))


# ==========================================
# PROPOSAL STORE
# ==========================================

class ProposalStore:
    """Proposals keyed by sequential 1-based id. Ids are never reused."""

    def __init__(self):
        self._proposals: Dict[int, Proposal] = {}
        self.next_id = 1

    def create(self, proposer: str, description: str) -> Proposal:
        pid = self.next_id
        self.next_id += 1
        proposal = Proposal(id=pid, proposer=proposer, description=description)
        self._proposals[pid] = proposal
        return proposal

    def get(self, proposal_id: int) -> Optional[Proposal]:
        return self._proposals.get(proposal_id)

    def snapshot(self, proposal_id: int) -> ProposalSnapshot:
        proposal = self._proposals.get(proposal_id)
        return proposal.snapshot() if proposal else EMPTY_PROPOSAL

    def count(self) -> int:
        return len(self._proposals)

    def all(self) -> List[Proposal]:
        return [self._proposals[pid] for pid in sorted(self._proposals)]

    # ------ persistence ------

    def to_dict(self) -> Dict:
        return {
            "next_id": self.next_id,
            "proposals": [
                {**asdict(p), "has_voted": sorted(p.has_voted)}
                for p in self.all()
            ],
        }

    def restore(self, data: Dict) -> None:
        self._proposals = {}
        for raw in data.get("proposals", []):
            p = Proposal(
                id=int(raw["id"]),
                proposer=raw["proposer"],
                description=raw["description"],
                vote_count=int(raw["vote_count"]),
                vote_share_weight=int(raw["vote_share_weight"]),
                passed=bool(raw["passed"]),
                executed=bool(raw.get("executed", False)),
                has_voted=set(raw.get("has_voted", [])),
            )
            self._proposals[p.id] = p
        self.next_id = int(data.get("next_id", len(self._proposals) + 1))


# ==========================================
# CONSENSUS EVALUATOR
# ==========================================

def has_consensus(vote_count: int, vote_share_weight: int,
                  total_owners: int, total_shares: int) -> bool:
    """Strict dual majority. Ties on either axis do not pass."""
    return vote_count * 2 > total_owners and vote_share_weight * 2 > total_shares


def consensus_detail(proposal: ProposalSnapshot, total_owners: int, total_shares: int) -> Dict:
    head_count = proposal.vote_count * 2 > total_owners
    weight = proposal.vote_share_weight * 2 > total_shares
    return {
        "vote_count": proposal.vote_count,
        "total_owners": total_owners,
        "head_count_majority": head_count,
        "vote_share_weight": proposal.vote_share_weight,
        "total_shares": total_shares,
        "share_majority": weight,
        "consensus_reached": head_count and weight,
        "passed": proposal.passed,
    }


# ==========================================
# THE LEDGER
# ==========================================

class GovernanceLedger:
    """
    Owns the stakeholder registry and the proposal store.
    Every operation runs under one lock; notifications go out after commit,
    in commit order.
    """

    def __init__(
        self,
        state_file: Optional[str] = None,
        max_total_shares: Optional[int] = None,
    ):
        self.state_file = state_file
        self.registry = StakeholderRegistry(max_total_shares=max_total_shares)
        self.proposals = ProposalStore()
        self._lock = threading.RLock()
        self._subscribers: List[Subscriber] = []
        if state_file:
            self._load_state()

    # ------ notifications ------

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def _publish(self, event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                log.warning("subscriber_failed", notification=event.name, error=repr(e))

    # ------ persistence ------

    def _load_state(self) -> None:
        try:
            with open(self.state_file) as f:
                data = json.load(f)
        except FileNotFoundError:
            return
        self._restore(data)
        log.info("ledger_state_loaded", path=self.state_file,
                 stakeholders=self.registry.count(), proposals=self.proposals.count())

    def _checkpoint(self) -> Optional[Dict]:
        return self.to_dict() if self.state_file else None

    def _restore(self, data: Dict) -> None:
        self.registry.restore(data.get("registry", {}))
        self.proposals.restore(data.get("proposals", {}))

    def _save_state(self, rollback: Optional[Dict] = None) -> None:
        """
        Write the snapshot. If the write fails, in-memory state is put back to
        `rollback` before the error propagates, so nothing is half-committed.
        """
        if not self.state_file:
            return
        tmp = f"{self.state_file}.tmp"
        try:
            with open(tmp, "w") as f:
                json.dump(self.to_dict(), f, indent=2)
            os.replace(tmp, self.state_file)
        except OSError as e:
            if rollback is not None:
                self._restore(rollback)
            log.error("ledger_state_save_failed", path=self.state_file, error=repr(e))
            raise

    def to_dict(self) -> Dict:
        with self._lock:
            return {
                "registry": self.registry.to_dict(),
                "proposals": self.proposals.to_dict(),
            }

    # ------ registry ------

    def register(self, identity: str, share: int) -> Stakeholder:
        """Add a stakeholder. Open to any caller; provenance is the registrar's concern."""
        with self._lock:
            before = self._checkpoint()
            try:
                stakeholder = self.registry.register(identity, share)
            except LedgerError as e:
                log.warning("register_rejected", identity=identity, error=type(e).__name__)
                raise
            self._save_state(rollback=before)
            log.info("stakeholder_registered", identity=identity, share=share,
                     total_owners=self.registry.count(), total_shares=self.registry.total_shares)
            return stakeholder

    def is_stakeholder(self, identity: str) -> bool:
        with self._lock:
            return self.registry.is_stakeholder(identity)

    def share_of(self, identity: str) -> int:
        with self._lock:
            return self.registry.share_of(identity)

    def count(self) -> int:
        with self._lock:
            return self.registry.count()

    def total_share(self) -> int:
        with self._lock:
            return self.registry.total_shares

    def stakeholders(self) -> List[Stakeholder]:
        with self._lock:
            return self.registry.stakeholders()

    # ------ proposals ------

    def create_proposal(self, proposer: str, description: str) -> int:
        with self._lock:
            if not self.registry.is_stakeholder(proposer):
                log.warning("proposal_rejected", proposer=proposer, error="NotAStakeholderError")
                raise NotAStakeholderError(proposer)
            before = self._checkpoint()
            proposal = self.proposals.create(proposer, description)
            self._save_state(rollback=before)
            log.info("proposal_created", proposal_id=proposal.id, proposer=proposer)
            self._publish(ProposalCreated(proposal.id, description))
            return proposal.id

    def get_proposal(self, proposal_id: int) -> ProposalSnapshot:
        """Never fails: ids that were never created read back as the empty record."""
        with self._lock:
            return self.proposals.snapshot(proposal_id)

    def has_voted(self, proposal_id: int, identity: str) -> bool:
        with self._lock:
            proposal = self.proposals.get(proposal_id)
            return bool(proposal) and identity in proposal.has_voted

    def proposal_count(self) -> int:
        with self._lock:
            return self.proposals.count()

    def list_proposals(self) -> List[Dict]:
        with self._lock:
            return [{"id": p.id, "proposer": p.proposer, **p.snapshot().to_dict()}
                    for p in self.proposals.all()]

    # ------ voting ------

    def cast_vote(self, voter: str, proposal_id: int) -> ProposalSnapshot:
        """
        Record a yes vote weighted by the voter's share, then evaluate consensus.
        Preconditions are checked in order and any failure leaves state untouched.
        """
        with self._lock:
            try:
                proposal = self._check_vote(voter, proposal_id)
            except LedgerError as e:
                log.warning("vote_rejected", voter=voter, proposal_id=proposal_id,
                            error=type(e).__name__)
                raise

            before = self._checkpoint()
            share = self.registry.share_of(voter)
            proposal.has_voted.add(voter)
            proposal.vote_count += 1
            proposal.vote_share_weight += share
            newly_passed = self._evaluate(proposal)
            self._save_state(rollback=before)

            log.info("vote_cast", proposal_id=proposal_id, voter=voter, share=share,
                     vote_count=proposal.vote_count, vote_share_weight=proposal.vote_share_weight)
            self._publish(Voted(proposal_id, voter, share))
            if newly_passed:
                log.info("proposal_passed", proposal_id=proposal_id,
                         vote_count=proposal.vote_count, total_owners=self.registry.count(),
                         vote_share_weight=proposal.vote_share_weight,
                         total_shares=self.registry.total_shares)
                self._publish(ProposalPassed(proposal_id))
            return proposal.snapshot()

    def _check_vote(self, voter: str, proposal_id: int) -> Proposal:
        if not self.registry.is_stakeholder(voter):
            raise NotAStakeholderError(voter)
        proposal = self.proposals.get(proposal_id)
        if proposal is None:
            raise UnknownProposalError(proposal_id)
        if voter in proposal.has_voted:
            raise DuplicateVoteError(voter, proposal_id)
        if proposal.passed:
            raise AlreadyPassedError(proposal_id)
        return proposal

    def _evaluate(self, proposal: Proposal) -> bool:
        """Returns True only on the false -> true transition."""
        if proposal.passed:
            return False
        if has_consensus(proposal.vote_count, proposal.vote_share_weight,
                         self.registry.count(), self.registry.total_shares):
            proposal.passed = True
            return True
        return False

    def evaluate_consensus(self, proposal_id: int) -> bool:
        """
        Re-run the evaluator against current totals. Passing is monotonic and
        a proposal that already passed produces no second notification.
        """
        with self._lock:
            proposal = self.proposals.get(proposal_id)
            if proposal is None:
                return False
            before = self._checkpoint()
            if self._evaluate(proposal):
                self._save_state(rollback=before)
                log.info("proposal_passed", proposal_id=proposal_id)
                self._publish(ProposalPassed(proposal_id))
            return proposal.passed

    def consensus_status(self, proposal_id: int) -> Dict:
        with self._lock:
            detail = consensus_detail(self.proposals.snapshot(proposal_id),
                                      self.registry.count(), self.registry.total_shares)
            return {"proposal_id": proposal_id, **detail}


# ==========================================
# DEMO
# ==========================================

if __name__ == "__main__":
    structlog.configure(processors=[structlog.dev.ConsoleRenderer()])

    ledger = GovernanceLedger()
    ledger.subscribe(lambda e: print(f"  [{e.name}] {event_to_dict(e)}"))

    print("\n" + "=" * 60)
    print("  GOVERNANCE LEDGER DEMO")
    print("=" * 60)

    ledger.register("0xA1", 6000)
    ledger.register("0xB2", 2000)
    ledger.register("0xC3", 2000)
    print(f"\nStakeholders: {ledger.count()}  total shares: {ledger.total_share()}")

    pid = ledger.create_proposal("0xA1", "Repaint the common hallway")
    ledger.cast_vote("0xA1", pid)
    print(f"  after first vote:  {ledger.consensus_status(pid)}")
    ledger.cast_vote("0xB2", pid)
    print(f"  after second vote: {ledger.consensus_status(pid)}")

    try:
        ledger.cast_vote("0xC3", pid)
    except AlreadyPassedError as e:
        print(f"\n[REJECTED] {e}")

    print("\n[DEMO COMPLETE]")
