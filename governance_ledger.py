"""
Governance Ledger v1.0
======================
Membership-gated governance core.

Members carry weighted voting power, submit proposals, and cast one
time-boxed vote per proposal. A proposal whose voting window has closed
with more weight for than against can be executed, exactly once.

Layers (bottom-up):
  - AccessControl      owner / active-member checks
  - MembershipRegistry admission, removal, voting power
  - ProposalLedger     proposals, ballots, tallies, execution
  - NotificationSink   where state changes are reported

Every operation runs under one writer lock, reads the clock once,
validates everything before mutating, and emits exactly one notification
on success. A rejected operation changes nothing.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import structlog

log = structlog.get_logger()


# ==========================================
# CONSTANTS
# ==========================================

VOTING_DURATION    = 7 * 24 * 60 * 60   # seconds a proposal stays open
MIN_VOTING_POWER   = 1
OWNER_VOTING_POWER = 100
ZERO_IDENTITY      = "0x" + "0" * 40


# ==========================================
# ERRORS
# ==========================================

class GovernanceError(Exception):
    """Base for every rejected operation. Raised before any state changes."""
    kind = "governance_error"


class Unauthorized(GovernanceError):
    kind = "unauthorized"


class NotFound(GovernanceError, LookupError):
    kind = "not_found"


class AlreadyExists(GovernanceError):
    kind = "already_exists"


class InvalidState(GovernanceError):
    kind = "invalid_state"


class InvalidArgument(GovernanceError, ValueError):
    kind = "invalid_argument"


# ==========================================
# ENUMS & DATA STRUCTURES
# ==========================================

class Event(str, Enum):
    MEMBER_ADDED      = "MemberAdded"
    MEMBER_REMOVED    = "MemberRemoved"
    PROPOSAL_CREATED  = "ProposalCreated"
    VOTE_CAST         = "VoteCast"
    PROPOSAL_EXECUTED = "ProposalExecuted"


class ProposalState(Enum):
    OPEN           = "open"            # now < end_time, not executed
    CLOSED_PENDING = "closed_pending"  # now >= end_time, not executed
    EXECUTED       = "executed"        # terminal


@dataclass(frozen=True)
class Member:
    identity: str
    is_active: bool = False
    voting_power: int = 0
    joined_at: int = 0


@dataclass(frozen=True)
class Ballot:
    voter: str
    support: bool
    power: int      # weight captured at cast time
    cast_at: int


@dataclass
class Proposal:
    id: int
    description: str
    proposer: str
    created_at: int
    end_time: int
    votes_for: int = 0
    votes_against: int = 0
    executed: bool = False
    ballots: Dict[str, Ballot] = field(default_factory=dict)

    def has_voted(self, identity: str) -> bool:
        return identity in self.ballots

    @property
    def passed(self) -> bool:
        return self.votes_for > self.votes_against

    def state(self, now: int) -> ProposalState:
        if self.executed:
            return ProposalState.EXECUTED
        if now < self.end_time:
            return ProposalState.OPEN
        return ProposalState.CLOSED_PENDING

    def snapshot(self) -> "Proposal":
        return replace(self, ballots=dict(self.ballots))


@dataclass(frozen=True)
class Notification:
    event: str
    fields: Dict[str, Any]


def _valid_identity(identity: Any) -> bool:
    return isinstance(identity, str) and bool(identity) and identity != ZERO_IDENTITY


def _require_int(value: Any, name: str) -> int:
    # bool is an int subclass; True is not a voting power
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{name} must be an integer, got {value!r}")
    return value


# ==========================================
# CLOCK
# ==========================================

class Clock(ABC):
    """Time source. Must never go backwards within a session."""

    @abstractmethod
    def now(self) -> int:
        ...


class SystemClock(Clock):
    """Wall clock in whole seconds, clamped to be non-decreasing."""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def now(self) -> int:
        with self._lock:
            self._last = max(self._last, int(time.time()))
            return self._last


class ManualClock(Clock):
    """Clock driven by hand. Used by tests and the demo."""

    def __init__(self, start: int = 0):
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards.")
        self._now += seconds
        return self._now

    def set(self, t: int) -> int:
        if t < self._now:
            raise ValueError(f"ManualClock cannot move backwards ({t} < {self._now}).")
        self._now = t
        return self._now


# ==========================================
# NOTIFICATION SINKS
# ==========================================

class NotificationSink(ABC):
    """Boundary through which state changes reach external observers."""

    @abstractmethod
    def emit(self, event: str, **fields) -> None:
        ...


class NullSink(NotificationSink):
    def emit(self, event: str, **fields) -> None:
        pass


class LogSink(NotificationSink):
    """Writes each notification as a structlog event."""

    def __init__(self, logger=None):
        self._log = logger or log

    def emit(self, event: str, **fields) -> None:
        self._log.info(event, **fields)


class RecordingSink(NotificationSink):
    """
    Keeps notifications in memory, in delivery order.

    With `maxlen` set, only the most recent `maxlen` notifications are kept.
    """

    def __init__(self, maxlen: Optional[int] = None):
        self.notifications: Deque[Notification] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def emit(self, event: str, **fields) -> None:
        with self._lock:
            self.notifications.append(Notification(event, dict(fields)))

    def snapshot(self) -> List[Notification]:
        with self._lock:
            return list(self.notifications)

    def events(self) -> List[str]:
        with self._lock:
            return [n.event for n in self.notifications]

    def clear(self):
        with self._lock:
            self.notifications.clear()


class FanoutSink(NotificationSink):
    """Delivers to several sinks. One failing sink does not starve the rest."""

    def __init__(self, *sinks: NotificationSink):
        self.sinks = list(sinks)

    def emit(self, event: str, **fields) -> None:
        for sink in self.sinks:
            _deliver(sink, event, fields)


def _deliver(sink: NotificationSink, event: str, fields: Dict[str, Any]) -> None:
    """Notifications are fire-and-forget: a broken observer never fails the operation."""
    try:
        sink.emit(event, **fields)
    except Exception:
        log.exception("notification_failed", event=event, sink=type(sink).__name__)


# ==========================================
# ACCESS CONTROL
# ==========================================

class AccessControl:
    """Owner and active-member predicates over the live member table."""

    def __init__(self, owner: str, members: Dict[str, Member]):
        self.owner = owner
        self._members = members

    def is_owner(self, caller: str) -> bool:
        return caller == self.owner

    def is_active_member(self, caller: str) -> bool:
        member = self._members.get(caller)
        return member is not None and member.is_active

    def require_owner(self, caller: str, action: str):
        if not self.is_owner(caller):
            raise Unauthorized(f"Only the owner may {action}.")

    def require_active_member(self, caller: str, action: str):
        if not self.is_active_member(caller):
            raise Unauthorized(f"Only active members may {action}.")


# ==========================================
# MEMBERSHIP REGISTRY
# ==========================================

class MembershipRegistry:
    """
    Identity -> Member table plus the active-member count.

    Removed members keep their record (power, join time) for audit.
    Re-admitting a removed identity overwrites that record.
    """

    def __init__(self, owner: str, clock: Clock, sink: NotificationSink, lock):
        if not _valid_identity(owner):
            raise InvalidArgument(f"Invalid owner identity {owner!r}.")
        self._clock = clock
        self._sink = sink
        self._lock = lock
        self._members: Dict[str, Member] = {}
        self.access = AccessControl(owner, self._members)

        self._members[owner] = Member(owner, True, OWNER_VOTING_POWER, clock.now())
        self._active_count = 1

    @property
    def owner(self) -> str:
        return self.access.owner

    # ------ mutations ------

    def add_member(self, caller: str, new_id: str, power: int) -> Member:
        with self._lock:
            now = self._clock.now()
            self.access.require_owner(caller, "add members")
            if not _valid_identity(new_id):
                raise InvalidArgument(f"Invalid member identity {new_id!r}.")
            if self.access.is_active_member(new_id):
                raise AlreadyExists(f"Member {new_id} is already active.")
            power = _require_int(power, "voting power")
            if power < MIN_VOTING_POWER:
                raise InvalidArgument(f"Voting power must be at least {MIN_VOTING_POWER}.")

            member = Member(new_id, True, power, now)
            self._members[new_id] = member
            self._active_count += 1
            _deliver(self._sink, Event.MEMBER_ADDED.value, {"member": new_id, "power": power})
            return member

    def remove_member(self, caller: str, target_id: str) -> Member:
        with self._lock:
            self.access.require_owner(caller, "remove members")
            if self.access.is_owner(target_id):
                raise InvalidArgument("The owner cannot be removed.")
            if not self.access.is_active_member(target_id):
                raise NotFound(f"{target_id} is not an active member.")

            member = replace(self._members[target_id], is_active=False)
            self._members[target_id] = member
            self._active_count -= 1
            _deliver(self._sink, Event.MEMBER_REMOVED.value, {"member": target_id})
            return member

    # ------ reads ------

    def is_member(self, identity: str) -> bool:
        with self._lock:
            return self.access.is_active_member(identity)

    def get_member(self, identity: str) -> Member:
        with self._lock:
            return self._members.get(identity) or Member(identity)

    def list_members(self, active_only: bool = False) -> List[Member]:
        with self._lock:
            return [
                m for _, m in sorted(self._members.items())
                if m.is_active or not active_only
            ]

    @property
    def total_active_members(self) -> int:
        with self._lock:
            return self._active_count


# ==========================================
# PROPOSAL LEDGER
# ==========================================

class ProposalLedger:
    """
    Sequential proposals with weighted, one-shot, time-boxed voting.

    Open -> Closed-Pending -> Executed (only if votes_for > votes_against).
    A proposal that closes without a majority stays Closed-Pending forever.
    """

    def __init__(
        self,
        registry: MembershipRegistry,
        clock: Clock,
        sink: NotificationSink,
        lock,
        voting_duration: int = VOTING_DURATION,
    ):
        if _require_int(voting_duration, "voting duration") <= 0:
            raise InvalidArgument("Voting duration must be positive.")
        self.registry = registry
        self.voting_duration = voting_duration
        self._clock = clock
        self._sink = sink
        self._lock = lock
        self._proposals: Dict[int, Proposal] = {}
        self._next_id = 0

    def _lookup(self, proposal_id: int) -> Proposal:
        proposal_id = _require_int(proposal_id, "proposal id")
        proposal = self._proposals.get(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal {proposal_id} not found.")
        return proposal

    # ------ mutations ------

    def create_proposal(self, caller: str, description: str) -> int:
        with self._lock:
            now = self._clock.now()
            self.registry.access.require_active_member(caller, "create proposals")
            if not isinstance(description, str) or not description:
                raise InvalidArgument("Proposal description must not be empty.")

            pid = self._next_id
            self._proposals[pid] = Proposal(
                id=pid,
                description=description,
                proposer=caller,
                created_at=now,
                end_time=now + self.voting_duration,
            )
            self._next_id += 1
            _deliver(self._sink, Event.PROPOSAL_CREATED.value,
                     {"proposal_id": pid, "proposer": caller, "description": description})
            return pid

    def vote(self, caller: str, proposal_id: int, support: bool) -> Ballot:
        with self._lock:
            now = self._clock.now()
            self.registry.access.require_active_member(caller, "vote")
            if not isinstance(support, bool):
                raise InvalidArgument(f"support must be True or False, got {support!r}")
            proposal = self._lookup(proposal_id)
            if proposal.executed:
                raise InvalidState(f"Proposal {proposal.id} has already been executed.")
            if now >= proposal.end_time:
                raise InvalidState(f"Voting on proposal {proposal.id} closed at {proposal.end_time}.")
            if proposal.has_voted(caller):
                raise AlreadyExists(f"{caller} has already voted on proposal {proposal.id}.")

            power = self.registry.get_member(caller).voting_power
            ballot = Ballot(caller, support, power, now)
            proposal.ballots[caller] = ballot
            if support:
                proposal.votes_for += power
            else:
                proposal.votes_against += power
            _deliver(self._sink, Event.VOTE_CAST.value,
                     {"proposal_id": proposal.id, "voter": caller, "support": support, "power": power})
            return ballot

    def execute_proposal(self, caller: Optional[str], proposal_id: int) -> Proposal:
        # No membership check: any caller may finalize a passed proposal.
        with self._lock:
            now = self._clock.now()
            proposal = self._lookup(proposal_id)
            if now < proposal.end_time:
                raise InvalidState(f"Proposal {proposal.id} is still open until {proposal.end_time}.")
            if proposal.executed:
                raise InvalidState(f"Proposal {proposal.id} has already been executed.")
            if not proposal.passed:
                raise InvalidState(
                    f"Proposal {proposal.id} did not pass "
                    f"({proposal.votes_for} for, {proposal.votes_against} against)."
                )

            proposal.executed = True
            _deliver(self._sink, Event.PROPOSAL_EXECUTED.value, {"proposal_id": proposal.id})
            log.info("proposal_executed", proposal_id=proposal.id, triggered_by=caller)
            return proposal.snapshot()

    # ------ reads ------

    def get_proposal(self, proposal_id: int) -> Proposal:
        with self._lock:
            return self._lookup(proposal_id).snapshot()

    def list_proposals(self) -> List[Proposal]:
        with self._lock:
            return [self._proposals[pid].snapshot() for pid in range(self._next_id)]

    def has_voted(self, proposal_id: int, identity: str) -> bool:
        with self._lock:
            return self._lookup(proposal_id).has_voted(identity)

    def get_ballot(self, proposal_id: int, identity: str) -> Optional[Ballot]:
        with self._lock:
            return self._lookup(proposal_id).ballots.get(identity)

    def proposal_state(self, proposal_id: int) -> ProposalState:
        with self._lock:
            now = self._clock.now()
            return self._lookup(proposal_id).state(now)

    @property
    def proposal_count(self) -> int:
        with self._lock:
            return self._next_id


# ==========================================
# THE LEDGER
# ==========================================

class GovernanceLedger:
    """
    The whole governance state: one registry, one proposal ledger, one lock.

    Build it once with `initialize` and hand it to whatever hosts it.
    """

    def __init__(
        self,
        owner: str,
        clock: Optional[Clock] = None,
        sink: Optional[NotificationSink] = None,
        voting_duration: int = VOTING_DURATION,
    ):
        self.clock = clock or SystemClock()
        self.sink = sink or LogSink()
        self._lock = threading.RLock()
        self.registry = MembershipRegistry(owner, self.clock, self.sink, self._lock)
        self.proposals = ProposalLedger(
            self.registry, self.clock, self.sink, self._lock, voting_duration
        )
        log.info("ledger_initialized", owner=owner, voting_duration=voting_duration)

    @classmethod
    def initialize(cls, owner: str, **kwargs) -> "GovernanceLedger":
        return cls(owner, **kwargs)

    def _run(self, operation: str, caller, fn, *args):
        try:
            return fn(*args)
        except GovernanceError as e:
            log.warning("operation_rejected", operation=operation, caller=caller,
                        error=e.kind, detail=str(e))
            raise

    @property
    def owner(self) -> str:
        return self.registry.owner

    @property
    def voting_duration(self) -> int:
        return self.proposals.voting_duration

    # ------ access control ------

    def is_owner(self, caller: str) -> bool:
        return self.registry.access.is_owner(caller)

    def is_active_member(self, caller: str) -> bool:
        return self.registry.is_member(caller)

    # ------ membership ------

    def add_member(self, caller: str, new_id: str, power: int) -> Member:
        return self._run("add_member", caller, self.registry.add_member, caller, new_id, power)

    def remove_member(self, caller: str, target_id: str) -> Member:
        return self._run("remove_member", caller, self.registry.remove_member, caller, target_id)

    def is_member(self, identity: str) -> bool:
        return self.registry.is_member(identity)

    def get_member(self, identity: str) -> Member:
        return self.registry.get_member(identity)

    def list_members(self, active_only: bool = False) -> List[Member]:
        return self.registry.list_members(active_only)

    @property
    def total_active_members(self) -> int:
        return self.registry.total_active_members

    # ------ proposals ------

    def create_proposal(self, caller: str, description: str) -> int:
        return self._run("create_proposal", caller, self.proposals.create_proposal, caller, description)

    def vote(self, caller: str, proposal_id: int, support: bool) -> Ballot:
        return self._run("vote", caller, self.proposals.vote, caller, proposal_id, support)

    def execute_proposal(self, caller: Optional[str], proposal_id: int) -> Proposal:
        return self._run("execute_proposal", caller, self.proposals.execute_proposal, caller, proposal_id)

    def get_proposal(self, proposal_id: int) -> Proposal:
        return self.proposals.get_proposal(proposal_id)

    def list_proposals(self) -> List[Proposal]:
        return self.proposals.list_proposals()

    def has_voted(self, proposal_id: int, identity: str) -> bool:
        return self.proposals.has_voted(proposal_id, identity)

    def get_ballot(self, proposal_id: int, identity: str) -> Optional[Ballot]:
        return self.proposals.get_ballot(proposal_id, identity)

    def proposal_state(self, proposal_id: int) -> ProposalState:
        return self.proposals.proposal_state(proposal_id)

    @property
    def proposal_count(self) -> int:
        return self.proposals.proposal_count


# ==========================================
# DEMO
# ==========================================

if __name__ == "__main__":
    print("\n" + "="*60)
    print("  GOVERNANCE LEDGER DEMO")
    print("="*60)

    clock = ManualClock(start=1_700_000_000)
    events = RecordingSink()
    ledger = GovernanceLedger.initialize("0xowner", clock=clock, sink=FanoutSink(events, LogSink()))

    ledger.add_member("0xowner", "0xalice", 10)
    pid = ledger.create_proposal("0xalice", "Upgrade treasury")
    ledger.vote("0xalice", pid, True)

    try:
        ledger.execute_proposal("0xanyone", pid)
    except InvalidState as e:
        print(f"\n[EARLY EXECUTE] {e}")

    clock.advance(VOTING_DURATION)
    executed = ledger.execute_proposal("0xanyone", pid)
    print(f"[EXECUTED] proposal={executed.id} for={executed.votes_for} against={executed.votes_against}")

    try:
        ledger.execute_proposal("0xanyone", pid)
    except InvalidState as e:
        print(f"[RE-EXECUTE] {e}")

    print(f"\nEvents: {', '.join(events.events())}")
    print("\n[DEMO COMPLETE]")
