"""Subgraph-to-core record mapping adapter.

This keeps the ledger's GraphQL field names out of the core pipeline. The
same mapping serves live query results and simulated payloads.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from core.errors import MalformedEventError
from core.models import (
    CategoryChanged,
    Circle,
    CollateralWithdrawn,
    Contribution,
    ContributionMade,
    Event,
    EventKind,
    Goal,
    MemberForfeited,
    MemberInvited,
    MemberJoined,
    Membership,
    PayoutDistributed,
    ReferralPaid,
    ReputationChanged,
    VoteExecuted,
    VotingInitiated,
    UserRef,
)

Raw = Mapping[str, Any]


def _user(raw: Raw, key: str) -> Optional[UserRef]:
    value = raw.get(key)
    if not isinstance(value, Mapping):
        return None
    return UserRef(id=value.get("id"), username=value.get("username"), full_name=value.get("fullName"))


def _user_id(raw: Raw, key: str) -> Optional[str]:
    user = _user(raw, key)
    return user.id if user else None


def _require(raw: Raw, key: str) -> Any:
    value = raw.get(key)
    if value is None or value == "":
        raise MalformedEventError(f"Missing field {key!r}")
    return value


def _int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"Expected an integer, got {value!r}") from exc


def _amount(value: Any) -> str:
    """Validate a smallest-unit integer amount and return it as a string."""

    if isinstance(value, float) and not value.is_integer():
        raise MalformedEventError(f"Expected an integer amount, got {value!r}")
    return str(_int(value))


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _ensure_object(raw: Any, label: str) -> None:
    if not isinstance(raw, Mapping):
        raise MalformedEventError(f"Expected an object for {label}, got {type(raw).__name__}")


def _timestamp(raw: Raw) -> int:
    transaction = raw.get("transaction")
    if isinstance(transaction, Mapping) and transaction.get("blockTimestamp") is not None:
        return _int(transaction["blockTimestamp"])
    return _int(raw.get("timestamp"))


def _base(raw: Raw) -> dict[str, Any]:
    return {"id": str(raw.get("id") or "simulated"), "timestamp": _timestamp(raw)}


def _member_joined(raw: Raw) -> MemberJoined:
    return MemberJoined(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        user=_user(raw, "user"),
        current_members=_int(raw.get("currentMembers")) if raw.get("currentMembers") is not None else None,
        circle_state=_int(raw.get("circleState")) if raw.get("circleState") is not None else None,
    )


def _payout(raw: Raw) -> PayoutDistributed:
    return PayoutDistributed(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        user=_user(raw, "user"),
        round=str(raw.get("round", "")),
        payout_amount=_amount(raw.get("payoutAmount")),
    )


def _contribution(raw: Raw) -> ContributionMade:
    return ContributionMade(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        user=_user(raw, "user"),
        round=str(raw.get("round", "")),
        amount=_amount(raw.get("amount")),
    )


def _collateral(raw: Raw) -> CollateralWithdrawn:
    return CollateralWithdrawn(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        user=_user(raw, "user"),
        amount=_amount(raw.get("amount")),
    )


def _invited(raw: Raw) -> MemberInvited:
    return MemberInvited(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        inviter=_user(raw, "inviter"),
        invitee=_user(raw, "invitee"),
        invited_at=_int(raw.get("invitedAt")) if raw.get("invitedAt") is not None else None,
    )


def _voting_initiated(raw: Raw) -> VotingInitiated:
    return VotingInitiated(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        voting_start_at=_int(raw.get("votingStartAt")),
        voting_end_at=_int(raw.get("votingEndAt")),
    )


def _vote_executed(raw: Raw) -> VoteExecuted:
    return VoteExecuted(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        circle_started=_bool(raw.get("circleStarted")),
        start_vote_total=str(raw.get("startVoteTotal") or "0"),
        withdraw_vote_total=str(raw.get("withdrawVoteTotal") or "0"),
        withdraw_won=_bool(raw.get("withdrawWon")),
    )


def _forfeited(raw: Raw) -> MemberForfeited:
    return MemberForfeited(
        **_base(raw),
        circle_id=str(_require(raw, "circleId")),
        forfeiter=_user(raw, "forfeiter"),
        forfeited_user=_user(raw, "forfeitedUser"),
        round=str(raw.get("round", "")),
        deduction_amount=_amount(raw.get("deductionAmount")),
    )


def _reputation(raw: Raw) -> ReputationChanged:
    return ReputationChanged(
        **_base(raw),
        user=_user(raw, "user"),
        old_score=_int(raw.get("oldScore")),
        new_score=_int(raw.get("newScore")),
        reason=raw.get("reason"),
    )


def _category(raw: Raw) -> CategoryChanged:
    return CategoryChanged(
        **_base(raw),
        user=_user(raw, "user"),
        old_category=str(raw.get("oldCategory", "")),
        new_category=str(raw.get("newCategory", "")),
    )


def _referral(raw: Raw) -> ReferralPaid:
    return ReferralPaid(
        **_base(raw),
        referrer=_user(raw, "referrer"),
        referee=_user(raw, "referee"),
        reward_amount=_amount(raw.get("rewardAmount")),
    )


_PARSERS: dict[EventKind, Callable[[Raw], Event]] = {
    EventKind.MEMBER_JOINED: _member_joined,
    EventKind.PAYOUT_DISTRIBUTED: _payout,
    EventKind.CONTRIBUTION_MADE: _contribution,
    EventKind.COLLATERAL_WITHDRAWN: _collateral,
    EventKind.MEMBER_INVITED: _invited,
    EventKind.VOTING_INITIATED: _voting_initiated,
    EventKind.VOTE_EXECUTED: _vote_executed,
    EventKind.MEMBER_FORFEITED: _forfeited,
    EventKind.REPUTATION_CHANGED: _reputation,
    EventKind.CATEGORY_CHANGED: _category,
    EventKind.REFERRAL_PAID: _referral,
}


def parse_event(kind: EventKind, raw: Raw) -> Event:
    """Build a core event from one raw subgraph record."""

    _ensure_object(raw, kind.value)
    return _PARSERS[kind](raw)


def parse_goal(raw: Raw) -> Optional[Goal]:
    """Return a Goal, or None when the record has no owner."""

    _ensure_object(raw, "goal")
    owner = _user_id(raw, "user")
    if not owner:
        return None
    return Goal(
        id=str(_require(raw, "id")),
        goal_id=str(raw.get("goalId") or raw["id"]),
        goal_name=str(raw.get("goalName") or "Untitled goal"),
        goal_amount=_amount(raw.get("goalAmount")),
        current_amount=_amount(raw.get("currentAmount")),
        deadline=_int(raw.get("deadline")),
        owner=owner,
        is_active=_bool(raw.get("isActive", True)),
    )


def parse_circle(raw: Raw) -> Circle:
    _ensure_object(raw, "circle")
    next_deadline = raw.get("nextDeadline")
    return Circle(
        id=str(_require(raw, "id")),
        circle_id=str(_require(raw, "circleId")),
        circle_name=str(raw.get("circleName") or "your circle"),
        current_round=str(raw.get("currentRound", "")),
        next_deadline=_int(next_deadline) if next_deadline not in (None, "") else None,
        contribution_amount=_amount(raw.get("contributionAmount")),
        creator=_user_id(raw, "creator"),
    )


def parse_membership(raw: Raw) -> Optional[Membership]:
    _ensure_object(raw, "membership")
    address = _user_id(raw, "user")
    if not address or raw.get("circleId") is None:
        return None
    return Membership(circle_id=str(raw["circleId"]), address=address)


def parse_contribution(raw: Raw) -> Optional[Contribution]:
    _ensure_object(raw, "contribution")
    address = _user_id(raw, "user")
    if not address or raw.get("circleId") is None:
        return None
    return Contribution(circle_id=str(raw["circleId"]), round=str(raw.get("round", "")), address=address)
