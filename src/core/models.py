"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to the ledger's GraphQL shapes or to any push transport.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterator, Mapping, Optional, Tuple, Union

from core.preferences import NotificationType


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class EventKind(str, Enum):
    """Ledger event variants, declared in processing order."""

    MEMBER_JOINED = "member_joined"
    PAYOUT_DISTRIBUTED = "payout_distributed"
    CONTRIBUTION_MADE = "contribution_made"
    COLLATERAL_WITHDRAWN = "collateral_withdrawn"
    MEMBER_INVITED = "member_invited"
    VOTING_INITIATED = "voting_initiated"
    VOTE_EXECUTED = "vote_executed"
    MEMBER_FORFEITED = "member_forfeited"
    REPUTATION_CHANGED = "reputation_changed"
    CATEGORY_CHANGED = "category_changed"
    REFERRAL_PAID = "referral_paid"


@dataclass(frozen=True)
class UserRef:
    """Ledger user reference; id is the wallet address."""

    id: Optional[str]
    username: Optional[str] = None
    full_name: Optional[str] = None

    def display_name(self, fallback: str) -> str:
        return self.username or fallback


@dataclass(frozen=True)
class LedgerEvent:
    """Fields every ledger event carries."""

    id: str
    timestamp: int

    kind: ClassVar[Optional[EventKind]] = None


@dataclass(frozen=True)
class MemberJoined(LedgerEvent):
    circle_id: str
    user: Optional[UserRef]
    current_members: Optional[int] = None
    circle_state: Optional[int] = None

    kind = EventKind.MEMBER_JOINED


@dataclass(frozen=True)
class PayoutDistributed(LedgerEvent):
    circle_id: str
    user: Optional[UserRef]
    round: str
    payout_amount: str

    kind = EventKind.PAYOUT_DISTRIBUTED


@dataclass(frozen=True)
class ContributionMade(LedgerEvent):
    circle_id: str
    user: Optional[UserRef]
    round: str
    amount: str

    kind = EventKind.CONTRIBUTION_MADE


@dataclass(frozen=True)
class CollateralWithdrawn(LedgerEvent):
    circle_id: str
    user: Optional[UserRef]
    amount: str

    kind = EventKind.COLLATERAL_WITHDRAWN


@dataclass(frozen=True)
class MemberInvited(LedgerEvent):
    circle_id: str
    inviter: Optional[UserRef]
    invitee: Optional[UserRef]
    invited_at: Optional[int] = None

    kind = EventKind.MEMBER_INVITED


@dataclass(frozen=True)
class VotingInitiated(LedgerEvent):
    circle_id: str
    voting_start_at: int
    voting_end_at: int

    kind = EventKind.VOTING_INITIATED


@dataclass(frozen=True)
class VoteExecuted(LedgerEvent):
    circle_id: str
    circle_started: bool
    start_vote_total: str = "0"
    withdraw_vote_total: str = "0"
    withdraw_won: bool = False

    kind = EventKind.VOTE_EXECUTED


@dataclass(frozen=True)
class MemberForfeited(LedgerEvent):
    circle_id: str
    forfeiter: Optional[UserRef]
    forfeited_user: Optional[UserRef]
    round: str
    deduction_amount: str

    kind = EventKind.MEMBER_FORFEITED


@dataclass(frozen=True)
class ReputationChanged(LedgerEvent):
    user: Optional[UserRef]
    old_score: int
    new_score: int
    reason: Optional[str] = None

    kind = EventKind.REPUTATION_CHANGED


@dataclass(frozen=True)
class CategoryChanged(LedgerEvent):
    user: Optional[UserRef]
    old_category: str
    new_category: str

    kind = EventKind.CATEGORY_CHANGED


@dataclass(frozen=True)
class ReferralPaid(LedgerEvent):
    referrer: Optional[UserRef]
    referee: Optional[UserRef]
    reward_amount: str

    kind = EventKind.REFERRAL_PAID


Event = Union[
    MemberJoined,
    PayoutDistributed,
    ContributionMade,
    CollateralWithdrawn,
    MemberInvited,
    VotingInitiated,
    VoteExecuted,
    MemberForfeited,
    ReputationChanged,
    CategoryChanged,
    ReferralPaid,
]


@dataclass(frozen=True)
class EventBatch:
    """One incremental ledger read: events plus the ledger's current timestamp."""

    events: Tuple[Event, ...]
    latest_timestamp: int

    def __len__(self) -> int:
        return len(self.events)

    def grouped(self) -> Iterator[Tuple[EventKind, Tuple[Event, ...]]]:
        """Yield (kind, events) in EventKind order, keeping order within a kind."""

        for kind in EventKind:
            group = tuple(event for event in self.events if event.kind is kind)
            if group:
                yield kind, group


@dataclass(frozen=True)
class Goal:
    """Active personal savings goal."""

    id: str
    goal_id: str
    goal_name: str
    goal_amount: str
    current_amount: str
    deadline: int
    owner: str
    is_active: bool = True


@dataclass(frozen=True)
class Circle:
    """Circle summary used by the deadline scheduler."""

    id: str
    circle_id: str
    circle_name: str
    current_round: str
    next_deadline: Optional[int]
    contribution_amount: str = "0"
    creator: Optional[str] = None


@dataclass(frozen=True)
class Membership:
    circle_id: str
    address: str


@dataclass(frozen=True)
class Contribution:
    circle_id: str
    round: str
    address: str


@dataclass(frozen=True)
class NotificationPayload:
    """A notification built for one audience; never persisted."""

    title: str
    message: str
    type: NotificationType
    priority: Priority
    action: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self, timestamp_ms: Optional[int] = None) -> dict[str, Any]:
        """Return the wire shape shared by push transports."""

        return {
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "priority": self.priority.value,
            "action": {"action": self.action} if self.action else None,
            "data": dict(self.data),
            "requiresAction": self.priority is Priority.HIGH,
            "timestamp": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        }


@dataclass
class DeliveryResult:
    """Aggregated outcome of one dispatcher call."""

    sent: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    # Addresses whose subscription the transport reported as permanently gone.
    invalid: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StatusSnapshot:
    cursor: Optional[int]
    is_polling: bool
    dedup_key_count: int
