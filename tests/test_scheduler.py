from __future__ import annotations

import asyncio
import json
from datetime import datetime, time, timezone

import httpx

from adapters.subgraph_source import SubgraphEventSource
from core.config import SchedulerConfig
from core.dedup import DedupRegistry
from core.dispatcher import DeliveryDispatcher
from core.errors import EventSourceError
from core.models import Circle, Contribution, Goal, Membership, Priority
from core.preferences import NotificationType
from core.scheduler import DeadlineScheduler, SchedulerState, seconds_until_daily, seconds_until_weekly
from fakes import FakeDedupStore, FakePreferences, FakeSender, FakeSource

NOW = 1_700_000_000
DAY = 86400
HOUR = 3600
ETH = 10**18


def _scheduler(source: FakeSource, sender: FakeSender, dispatcher=None, store=None) -> DeadlineScheduler:
    prefs = FakePreferences()
    prefs.subscribe("0xowner", "0xa", "0xb", "0xc")
    return DeadlineScheduler(
        source=source,
        dispatcher=dispatcher or DeliveryDispatcher(prefs, sender),
        config=SchedulerConfig(),
        state=SchedulerState(dedup=DedupRegistry(store)),
        clock=lambda: NOW,
    )


def _goal(current: int, target: int = 100 * ETH, deadline: int = NOW + 10 * DAY) -> Goal:
    return Goal(
        id="g1",
        goal_id="1",
        goal_name="Vacation",
        goal_amount=str(target),
        current_amount=str(current),
        deadline=deadline,
        owner="0xOwner",
    )


def test_two_day_window_notifies_with_progress_and_remaining() -> None:
    source = FakeSource()
    source.goals = [_goal(current=40 * ETH, deadline=NOW + int(1.5 * DAY))]
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    asyncio.run(scheduler.check_goal_deadlines())

    assert len(sender.sent) == 1
    address, payload = sender.sent[0]
    assert address == "0xowner"
    assert payload.type is NotificationType.GOAL_DEADLINE_2DAYS
    assert payload.priority is Priority.MEDIUM
    assert "40% complete, $60.00 remaining" in payload.message
    assert "goal-deadline-2days:g1" in scheduler.state.dedup


def test_one_day_window_is_high_priority() -> None:
    source = FakeSource()
    source.goals = [_goal(current=10 * ETH, deadline=NOW + 12 * HOUR)]
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    asyncio.run(scheduler.check_goal_deadlines())

    assert [payload.type for _, payload in sender.sent] == [NotificationType.GOAL_DEADLINE_1DAY]
    assert sender.sent[0][1].priority is Priority.HIGH


def test_past_deadline_is_ignored() -> None:
    source = FakeSource()
    source.goals = [_goal(current=10 * ETH, deadline=NOW - HOUR)]
    sender = FakeSender()

    asyncio.run(_scheduler(source, sender).check_goal_deadlines())

    assert sender.sent == []


def test_milestone_fires_once_per_epoch() -> None:
    source = FakeSource()
    source.goals = [_goal(current=52 * ETH)]
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    async def ticks() -> None:
        for _ in range(3):
            await scheduler.check_goal_deadlines()

    asyncio.run(ticks())
    assert sender.titles_for("0xowner") == ["Goal Milestone Reached! 🎯"]
    assert sender.sent[0][1].data["milestone"] == 50

    assert scheduler.reset() == 1
    asyncio.run(scheduler.check_goal_deadlines())
    assert len(sender.sent) == 2


def test_progress_outside_band_has_no_milestone() -> None:
    source = FakeSource()
    source.goals = [_goal(current=57 * ETH)]
    sender = FakeSender()

    asyncio.run(_scheduler(source, sender).check_goal_deadlines())

    assert sender.sent == []


def test_completed_goal_notifies_once() -> None:
    source = FakeSource()
    source.goals = [_goal(current=120 * ETH)]
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    asyncio.run(scheduler.check_goal_deadlines())
    asyncio.run(scheduler.check_goal_deadlines())

    assert sender.titles_for("0xowner") == ["Goal Completed! 🎉"]


def _circle(deadline: int) -> Circle:
    return Circle(
        id="c1",
        circle_id="7",
        circle_name="Family Pot",
        current_round="2",
        next_deadline=deadline,
        creator="0xC",
    )


def _circle_source(deadline: int) -> FakeSource:
    source = FakeSource()
    source.circles = [_circle(deadline), Circle(id="c2", circle_id="8", circle_name="Later", current_round="1", next_deadline=NOW + 3 * DAY)]
    source.memberships = [Membership("7", "0xA"), Membership("7", "0xb")]
    source.contributions = [Contribution("7", "2", "0xa"), Contribution("7", "1", "0xb")]
    return source


def test_circle_reminder_targets_members_who_have_not_paid() -> None:
    source = _circle_source(NOW + 10 * HOUR)
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    asyncio.run(scheduler.check_circle_deadlines())

    assert source.batch_queries == [["7"]]
    assert sorted(address for address, _ in sender.sent) == ["0xb", "0xc"]
    payload = sender.sent[0][1]
    assert payload.type is NotificationType.CONTRIBUTION_DUE
    assert payload.priority is Priority.MEDIUM
    assert "Family Pot" in payload.message
    assert "circle-contribution-due:7:2" in scheduler.state.dedup


def test_final_warning_uses_its_own_key() -> None:
    source = _circle_source(NOW + 10 * HOUR)
    sender = FakeSender()
    scheduler = _scheduler(source, sender)
    asyncio.run(scheduler.check_circle_deadlines())

    source.circles = [_circle(NOW + 30 * 60)]
    asyncio.run(scheduler.check_circle_deadlines())
    asyncio.run(scheduler.check_circle_deadlines())

    late = [payload for _, payload in sender.sent if payload.type is NotificationType.LATE_PAYMENT_WARNING]
    assert len(late) == 2
    assert all(payload.priority is Priority.HIGH for payload in late)
    assert "circle-late-warning:7:2" in scheduler.state.dedup


def test_no_circles_in_window_skips_batch_query() -> None:
    source = _circle_source(NOW + 2 * DAY)
    sender = FakeSender()

    asyncio.run(_scheduler(source, sender).check_circle_deadlines())

    assert source.batch_queries == []
    assert sender.sent == []


def test_failed_dispatch_leaves_key_unset_for_retry() -> None:
    class FlakyDispatcher:
        def __init__(self, inner: DeliveryDispatcher) -> None:
            self.inner = inner
            self.fail = True

        async def send(self, recipients, payload):
            if self.fail:
                raise RuntimeError("transport offline")
            return await self.inner.send(recipients, payload)

    source = FakeSource()
    source.goals = [_goal(current=120 * ETH)]
    sender = FakeSender()
    prefs = FakePreferences()
    prefs.subscribe("0xowner")
    dispatcher = FlakyDispatcher(DeliveryDispatcher(prefs, sender))
    scheduler = _scheduler(source, sender, dispatcher=dispatcher)

    asyncio.run(scheduler.check_goal_deadlines())
    assert "goal-completed:g1" not in scheduler.state.dedup

    dispatcher.fail = False
    asyncio.run(scheduler.check_goal_deadlines())
    assert "goal-completed:g1" in scheduler.state.dedup
    assert len(sender.sent) == 1


def test_run_checks_isolates_evaluator_failures() -> None:
    class NoGoalsSource(FakeSource):
        async def query_active_goals(self):
            raise EventSourceError("SSL handshake failed")

    source = NoGoalsSource()
    source.circles = [_circle(NOW + 10 * HOUR)]
    source.memberships = [Membership("7", "0xa")]
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    asyncio.run(scheduler.run_checks())

    assert sorted(address for address, _ in sender.sent) == ["0xa", "0xc"]
    assert scheduler.state.last_circle_check == NOW


def test_dedup_keys_persist_across_restarts() -> None:
    store = FakeDedupStore()
    source = FakeSource()
    source.goals = [_goal(current=120 * ETH)]
    sender = FakeSender()

    asyncio.run(_scheduler(source, sender, store=store).check_goal_deadlines())
    asyncio.run(_scheduler(source, sender, store=store).check_goal_deadlines())

    assert store.keys == {"goal-completed:g1"}
    assert len(sender.sent) == 1


def test_seconds_until_daily_rolls_to_tomorrow() -> None:
    now = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    assert seconds_until_daily(now, time(9, 0)) == 23 * HOUR
    assert seconds_until_daily(now, time(10, 30)) == 30 * 60


def test_seconds_until_weekly_targets_next_weekday() -> None:
    # 2024-05-01 is a Wednesday.
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    assert seconds_until_weekly(now, 6, time(0, 0)) == 3 * DAY + 12 * HOUR
    assert seconds_until_weekly(now, 2, time(12, 0)) == 7 * DAY


def test_malformed_goal_record_does_not_block_other_goals() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        query = json.loads(request.content)["query"]
        rows = []
        if "personalGoals" in query:
            base = {"goalAmount": str(100 * ETH), "isActive": True, "user": {"id": "0xOwner"}}
            rows = [
                {**base, "id": "g1", "currentAmount": str(120 * ETH), "deadline": str(NOW + 10 * DAY)},
                {**base, "id": "g2", "currentAmount": "0", "deadline": "tomorrow"},
            ]
        return httpx.Response(200, json={"data": {"rows": rows}})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    source = SubgraphEventSource("https://subgraph.example/graphql", client=client)
    sender = FakeSender()
    scheduler = _scheduler(source, sender)

    asyncio.run(scheduler.run_checks())

    assert sender.titles_for("0xowner") == ["Goal Completed! 🎉"]
    assert "goal-completed:g1" in scheduler.state.dedup
