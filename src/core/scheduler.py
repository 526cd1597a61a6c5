"""Goal and circle deadline scheduler.

Two evaluators run on timers (a daily fixed time, a fallback interval, and
once shortly after startup). Each condition is notified at most once per
dedup epoch; the registry is cleared wholesale once a week, which can
re-fire a still-active condition once after the reset.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from datetime import time as dt_time
from typing import Callable, Optional

from core.config import SchedulerConfig
from core.dedup import (
    DedupRegistry,
    circle_deadline_key,
    goal_completed_key,
    goal_deadline_key,
    goal_milestone_key,
)
from core.dispatcher import DeliveryDispatcher
from core.formatting import calculate_progress, format_amount, remaining_amount
from core.models import Circle, Goal, NotificationPayload, Priority
from core.ports import EventSourcePort
from core.preferences import NotificationType
from core.recipients import normalize_addresses

LOGGER = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
SECONDS_PER_HOUR = 3600
GOAL_MILESTONES = (25, 50, 75)
MILESTONE_BAND = 5
CIRCLE_REMINDER_WINDOW_HOURS = 24
FINAL_WARNING_HOURS = 1


def seconds_until_daily(now: datetime, at: dt_time) -> float:
    """Seconds from ``now`` until the next occurrence of ``at``."""

    target = datetime.combine(now.date(), at, tzinfo=now.tzinfo)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def seconds_until_weekly(now: datetime, weekday: int, at: dt_time) -> float:
    """Seconds from ``now`` until the next ``weekday`` (Monday=0) at ``at``."""

    days_ahead = (weekday - now.weekday()) % 7
    target = datetime.combine(now.date() + timedelta(days=days_ahead), at, tzinfo=now.tzinfo)
    if target <= now:
        target += timedelta(days=7)
    return (target - now).total_seconds()


@dataclass
class SchedulerState:
    """Mutable state shared by the deadline evaluators."""

    dedup: DedupRegistry = field(default_factory=DedupRegistry)
    last_goal_check: Optional[float] = None
    last_circle_check: Optional[float] = None
    last_reset: Optional[float] = None


class DeadlineScheduler:
    """Evaluate goal and circle deadlines and notify once per condition."""

    def __init__(
        self,
        source: EventSourcePort,
        dispatcher: DeliveryDispatcher,
        config: SchedulerConfig,
        state: Optional[SchedulerState] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._dispatcher = dispatcher
        self._config = config
        self.state = state or SchedulerState()
        self._clock = clock

    async def _notify_once(self, key: str, recipients: list[str], payload: NotificationPayload) -> bool:
        """Dispatch unless ``key`` was already notified; record the key on success."""

        if key in self.state.dedup:
            return False
        try:
            result = await self._dispatcher.send(recipients, payload)
        except Exception:
            # Leave the key unset so the next tick retries this condition.
            LOGGER.exception("Dispatch for %s failed", key)
            return False
        self.state.dedup.add(key)
        LOGGER.info("%s: sent=%s failed=%s", key, result.sent, result.failed)
        return True

    async def check_goal_deadlines(self) -> None:
        goals = await self._source.query_active_goals()
        now = self._clock()
        self.state.last_goal_check = now
        for goal in goals:
            await self._check_goal(goal, now)

    async def _check_goal(self, goal: Goal, now: float) -> None:
        days_until_deadline = (goal.deadline - now) / SECONDS_PER_DAY
        progress = calculate_progress(goal.current_amount, goal.goal_amount)
        remaining = format_amount(remaining_amount(goal.current_amount, goal.goal_amount))
        owner = [goal.owner.lower()]
        deadline_data = {"goalId": goal.goal_id, "deadline": goal.deadline}

        if 1 < days_until_deadline <= 2:
            await self._notify_once(
                goal_deadline_key(goal.id, 2),
                owner,
                NotificationPayload(
                    title="Goal Deadline Approaching ⏰",
                    message=(
                        f'Your "{goal.goal_name}" goal deadline is in 2 days! '
                        f"{progress}% complete, {remaining} remaining."
                    ),
                    type=NotificationType.GOAL_DEADLINE_2DAYS,
                    priority=Priority.MEDIUM,
                    action="/goals",
                    data=deadline_data,
                ),
            )

        if 0 < days_until_deadline <= 1:
            await self._notify_once(
                goal_deadline_key(goal.id, 1),
                owner,
                NotificationPayload(
                    title="Goal Deadline Tomorrow! ⚡",
                    message=(
                        f'Your "{goal.goal_name}" goal deadline is tomorrow! '
                        f"{progress}% complete, {remaining} remaining."
                    ),
                    type=NotificationType.GOAL_DEADLINE_1DAY,
                    priority=Priority.HIGH,
                    action="/goals",
                    data=deadline_data,
                ),
            )

        for milestone in GOAL_MILESTONES:
            if milestone <= progress < milestone + MILESTONE_BAND:
                await self._notify_once(
                    goal_milestone_key(goal.id, milestone),
                    owner,
                    NotificationPayload(
                        title="Goal Milestone Reached! 🎯",
                        message=f'You\'ve reached {milestone}% of your "{goal.goal_name}" goal!',
                        type=NotificationType.GOAL_MILESTONE,
                        priority=Priority.LOW,
                        action="/goals",
                        data={"goalId": goal.goal_id, "milestone": milestone, "progress": progress},
                    ),
                )

        if progress >= 100:
            await self._notify_once(
                goal_completed_key(goal.id),
                owner,
                NotificationPayload(
                    title="Goal Completed! 🎉",
                    message=f'Congratulations! You\'ve completed your "{goal.goal_name}" goal!',
                    type=NotificationType.GOAL_COMPLETED,
                    priority=Priority.MEDIUM,
                    action="/goals",
                    data={"goalId": goal.goal_id},
                ),
            )

    async def check_circle_deadlines(self) -> None:
        now = self._clock()
        self.state.last_circle_check = now
        circles = [
            circle
            for circle in await self._source.query_active_circles()
            if self._within_reminder_window(circle, now)
        ]
        if not circles:
            return

        # Two queries for all circles instead of two per circle.
        memberships, contributions = await self._source.query_members_and_contributions(
            [circle.circle_id for circle in circles]
        )
        members_by_circle: dict[str, set[str]] = {}
        for membership in memberships:
            members_by_circle.setdefault(membership.circle_id, set()).update(
                normalize_addresses([membership.address])
            )
        contributed: dict[tuple[str, str], set[str]] = {}
        for contribution in contributions:
            contributed.setdefault((contribution.circle_id, contribution.round), set()).update(
                normalize_addresses([contribution.address])
            )

        for circle in circles:
            members = members_by_circle.get(circle.circle_id, set()) | normalize_addresses([circle.creator])
            paid = contributed.get((circle.circle_id, circle.current_round), set())
            pending = sorted(members - paid)
            if not pending:
                continue
            await self._remind_circle(circle, pending, now)

    @staticmethod
    def _within_reminder_window(circle: Circle, now: float) -> bool:
        if not circle.next_deadline:
            return False
        hours_until_deadline = (circle.next_deadline - now) / SECONDS_PER_HOUR
        return 0 < hours_until_deadline <= CIRCLE_REMINDER_WINDOW_HOURS

    async def _remind_circle(self, circle: Circle, pending: list[str], now: float) -> None:
        hours_until_deadline = (circle.next_deadline - now) / SECONDS_PER_HOUR
        final_warning = hours_until_deadline <= FINAL_WARNING_HOURS
        if final_warning:
            title = "Urgent: Circle Payment Due! ⚡"
            notification_type, priority, time_str = NotificationType.LATE_PAYMENT_WARNING, Priority.HIGH, "less than 1 hour"
        else:
            title = "Circle Contribution Reminder ⏰"
            notification_type, priority, time_str = NotificationType.CONTRIBUTION_DUE, Priority.MEDIUM, "24 hours"

        await self._notify_once(
            circle_deadline_key(circle.circle_id, circle.current_round, final_warning),
            pending,
            NotificationPayload(
                title=title,
                message=(
                    f'Your payment for "{circle.circle_name}" is due in {time_str}. '
                    "Pay now to avoid credit score loss!"
                ),
                type=notification_type,
                priority=priority,
                action=f"/circles/{circle.circle_id}",
                data={"circleId": circle.circle_id, "round": circle.current_round, "deadline": circle.next_deadline},
            ),
        )

    async def run_checks(self) -> None:
        """Run both evaluators concurrently; one failing does not stop the other."""

        results = await asyncio.gather(
            self.check_goal_deadlines(),
            self.check_circle_deadlines(),
            return_exceptions=True,
        )
        for name, result in zip(("goal", "circle"), results):
            if isinstance(result, Exception):
                LOGGER.error("Error checking %s deadlines: %s", name, result)
                if "SSL" in str(result) or "EPROTO" in str(result):
                    LOGGER.error("SSL/protocol error talking to the ledger; check the network path")

    def reset(self) -> int:
        self.state.last_reset = self._clock()
        return self.state.dedup.clear()

    async def _daily_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_daily(datetime.now().astimezone(), self._config.daily_check_time))
            await self.run_checks()

    async def _fallback_loop(self) -> None:
        await asyncio.sleep(self._config.initial_delay_seconds)
        while True:
            await self.run_checks()
            await asyncio.sleep(self._config.fallback_interval_hours * SECONDS_PER_HOUR)

    async def _weekly_reset_loop(self) -> None:
        while True:
            await asyncio.sleep(
                seconds_until_weekly(
                    datetime.now().astimezone(),
                    self._config.weekly_reset_weekday,
                    self._config.weekly_reset_time,
                )
            )
            self.reset()

    async def run_forever(self) -> None:
        """Run the daily, fallback, and weekly reset timers until cancelled."""

        await asyncio.gather(self._daily_loop(), self._fallback_loop(), self._weekly_reset_loop())
