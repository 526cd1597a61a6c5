from __future__ import annotations

from dataclasses import fields

import pytest

from adapters.subgraph_mapper import parse_circle, parse_event, parse_goal, parse_membership
from core.errors import MalformedEventError
from core.models import ContributionMade, EventKind, MemberForfeited, PayoutDistributed, VoteExecuted


def test_payout_reads_block_timestamp_and_user() -> None:
    event = parse_event(
        EventKind.PAYOUT_DISTRIBUTED,
        {
            "id": "0xtx-1",
            "circleId": 5,
            "user": {"id": "0xA", "username": "alice", "fullName": "Alice A"},
            "round": "3",
            "payoutAmount": "2000000000000000000",
            "transaction": {"blockTimestamp": "1700000500"},
        },
    )

    assert isinstance(event, PayoutDistributed)
    assert event.timestamp == 1_700_000_500
    assert event.circle_id == "5"
    assert event.user.username == "alice"
    assert event.kind is EventKind.PAYOUT_DISTRIBUTED


def test_simulated_payload_defaults() -> None:
    event = parse_event(
        EventKind.VOTE_EXECUTED,
        {"circleId": "9", "circleStarted": "true", "timestamp": 42},
    )

    assert isinstance(event, VoteExecuted)
    assert event.id == "simulated"
    assert event.timestamp == 42
    assert event.circle_started
    assert event.withdraw_vote_total == "0"


def test_forfeit_keeps_both_parties() -> None:
    event = parse_event(
        EventKind.MEMBER_FORFEITED,
        {
            "id": "f1",
            "circleId": "3",
            "forfeiter": {"id": "0xf"},
            "forfeitedUser": {"id": "0xlate"},
            "round": "4",
            "deductionAmount": "100",
        },
    )

    assert isinstance(event, MemberForfeited)
    assert event.forfeited_user.id == "0xlate"
    assert event.forfeiter.id == "0xf"


def test_missing_circle_id_is_malformed() -> None:
    with pytest.raises(MalformedEventError):
        parse_event(EventKind.MEMBER_JOINED, {"id": "x", "user": {"id": "0xa"}})


def test_non_numeric_timestamp_is_malformed() -> None:
    with pytest.raises(MalformedEventError):
        parse_event(EventKind.CONTRIBUTION_MADE, {"circleId": "1", "timestamp": "soon"})


def test_goal_without_owner_is_dropped() -> None:
    assert parse_goal({"id": "g1", "goalAmount": "10"}) is None

    goal = parse_goal(
        {
            "id": "g1",
            "goalId": "12",
            "goalName": "Laptop",
            "goalAmount": "100",
            "currentAmount": "25",
            "deadline": "1700100000",
            "isActive": True,
            "user": {"id": "0xowner"},
        }
    )
    assert goal is not None
    assert goal.goal_id == "12"
    assert goal.deadline == 1_700_100_000


def test_circle_and_membership_records() -> None:
    circle = parse_circle(
        {"id": "c1", "circleId": "7", "currentRound": "2", "nextDeadline": "1700000000", "creator": {"id": "0xC"}}
    )

    assert circle.creator == "0xC"
    assert circle.circle_name == "your circle"
    assert circle.next_deadline == 1_700_000_000
    assert parse_membership({"circleId": "7", "user": None}) is None
    assert parse_membership({"circleId": "7", "user": {"id": "0xa"}}).address == "0xa"


@pytest.mark.parametrize("amount", ["1.5e18", "12.5", "lots", 2.5, {"value": 1}])
def test_non_integer_amount_is_malformed(amount) -> None:
    with pytest.raises(MalformedEventError):
        parse_event(EventKind.PAYOUT_DISTRIBUTED, {"circleId": "5", "user": {"id": "0xa"}, "payoutAmount": amount})


def test_goal_amounts_and_deadline_are_validated() -> None:
    goal = {"id": "g1", "goalAmount": "100", "currentAmount": "40", "deadline": "900", "user": {"id": "0xa"}}

    assert parse_goal(goal).current_amount == "40"
    with pytest.raises(MalformedEventError):
        parse_goal({**goal, "goalAmount": "1e20"})
    with pytest.raises(MalformedEventError):
        parse_goal({**goal, "deadline": "tomorrow"})


@pytest.mark.parametrize("raw", [None, "payout", ["circleId", "5"]])
def test_non_object_record_is_malformed(raw) -> None:
    with pytest.raises(MalformedEventError):
        parse_event(EventKind.PAYOUT_DISTRIBUTED, raw)
    with pytest.raises(MalformedEventError):
        parse_circle(raw)


def test_kind_is_a_class_tag_not_a_field() -> None:
    assert "kind" not in {field.name for field in fields(ContributionMade)}
    assert ContributionMade.kind is EventKind.CONTRIBUTION_MADE
