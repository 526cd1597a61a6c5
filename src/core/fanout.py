"""Event-to-notification fan-out.

Each ledger event variant has one handler that decides the audiences,
builds the payloads, and hands them to the dispatcher. Handlers are safe to
run more than once for the same event; the poller relies on that for
at-least-once processing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from core.dispatcher import DeliveryDispatcher
from core.errors import UnknownEventTypeError
from core.formatting import format_amount
from core.models import (
    CategoryChanged,
    CollateralWithdrawn,
    ContributionMade,
    DeliveryResult,
    Event,
    EventBatch,
    EventKind,
    MemberForfeited,
    MemberInvited,
    MemberJoined,
    NotificationPayload,
    PayoutDistributed,
    Priority,
    ReferralPaid,
    ReputationChanged,
    UserRef,
    VoteExecuted,
    VotingInitiated,
)
from core.preferences import NotificationType
from core.recipients import RecipientResolver

LOGGER = logging.getLogger(__name__)

# Short names accepted by the simulation entry point.
EVENT_KIND_ALIASES: dict[str, EventKind] = {
    "join": EventKind.MEMBER_JOINED,
    "payout": EventKind.PAYOUT_DISTRIBUTED,
    "contribution": EventKind.CONTRIBUTION_MADE,
    "withdrawal": EventKind.COLLATERAL_WITHDRAWN,
    "invite": EventKind.MEMBER_INVITED,
    "voting": EventKind.VOTING_INITIATED,
    "vote": EventKind.VOTE_EXECUTED,
    "forfeit": EventKind.MEMBER_FORFEITED,
    "reputation": EventKind.REPUTATION_CHANGED,
    "category": EventKind.CATEGORY_CHANGED,
    "referral": EventKind.REFERRAL_PAID,
}


def resolve_event_kind(name: str) -> EventKind:
    """Map a simulation event type name (alias or kind value) to an EventKind."""

    key = name.strip().lower()
    if key in EVENT_KIND_ALIASES:
        return EVENT_KIND_ALIASES[key]
    try:
        return EventKind(key)
    except ValueError:
        raise UnknownEventTypeError(f"Unknown event type: {name}") from None


def _user_id(user: Optional[UserRef]) -> Optional[str]:
    return user.id if user and user.id else None


def _format_date(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%b %d, %Y")


class NotificationFanout:
    """Turn ledger events into per-audience dispatcher calls."""

    def __init__(self, resolver: RecipientResolver, dispatcher: DeliveryDispatcher) -> None:
        self._resolver = resolver
        self._dispatcher = dispatcher
        self._handlers: dict[EventKind, Callable[..., Awaitable[None]]] = {
            EventKind.MEMBER_JOINED: self.handle_member_joined,
            EventKind.PAYOUT_DISTRIBUTED: self.handle_payout,
            EventKind.CONTRIBUTION_MADE: self.handle_contribution,
            EventKind.COLLATERAL_WITHDRAWN: self.handle_collateral_withdrawn,
            EventKind.MEMBER_INVITED: self.handle_member_invited,
            EventKind.VOTING_INITIATED: self.handle_voting_initiated,
            EventKind.VOTE_EXECUTED: self.handle_vote_executed,
            EventKind.MEMBER_FORFEITED: self.handle_member_forfeited,
            EventKind.REPUTATION_CHANGED: self.handle_reputation_changed,
            EventKind.CATEGORY_CHANGED: self.handle_category_changed,
            EventKind.REFERRAL_PAID: self.handle_referral_paid,
        }

    async def handle_batch(self, batch: EventBatch) -> None:
        """Handle every event, one variant group at a time.

        Exceptions propagate so the caller can withhold the cursor.
        """

        for kind, events in batch.grouped():
            LOGGER.info("Processing %s %s event(s)", len(events), kind.value)
            for event in events:
                await self.handle(event)

    async def handle(self, event: Event) -> None:
        handler = self._handlers.get(event.kind)
        if handler is None:
            raise UnknownEventTypeError(f"No handler for {type(event).__name__}")
        await handler(event)

    async def _deliver(self, audience: str, recipients: Iterable[str], payload: NotificationPayload) -> Optional[DeliveryResult]:
        """Send one audience's notification in isolation from the others."""

        recipients = list(recipients)
        if not recipients:
            LOGGER.debug("No %s recipients for %s; skipping", audience, payload.type.value)
            return None
        try:
            result = await self._dispatcher.send(recipients, payload)
        except Exception:
            LOGGER.exception("Dispatch of %s to %s failed", payload.type.value, audience)
            return None
        LOGGER.info(
            "%s notification (%s): sent=%s failed=%s",
            payload.type.value,
            audience,
            result.sent,
            result.failed,
        )
        return result

    @staticmethod
    def _skip(event: Event, missing: str) -> None:
        LOGGER.warning("Skipping %s %s: missing %s", event.kind.value, event.id, missing)

    async def handle_member_joined(self, event: MemberJoined) -> None:
        actor = _user_id(event.user)
        if not actor:
            self._skip(event, "user")
            return

        others = await self._resolver.members(event.circle_id, exclude=actor)
        LOGGER.info("Member %s joined circle %s; notifying %s existing members", actor, event.circle_id, len(others))
        if not others:
            return

        circle_name = await self._resolver.circle_name(event.circle_id)
        name = event.user.display_name("Someone")
        await self._deliver(
            "members",
            others,
            NotificationPayload(
                title="New Member Joined 👋",
                message=f'{name} joined "{circle_name}"',
                type=NotificationType.CIRCLE_MEMBER_JOINED,
                priority=Priority.HIGH,
                action="/circles",
                data={"circleId": event.circle_id, "newMember": actor},
            ),
        )

    async def handle_payout(self, event: PayoutDistributed) -> None:
        actor = _user_id(event.user)
        if not actor:
            self._skip(event, "user")
            return

        amount = format_amount(event.payout_amount)
        LOGGER.info("Payout of %s to %s in circle %s", amount, actor, event.circle_id)

        await self._deliver(
            "recipient",
            [actor],
            NotificationPayload(
                title="Payment Received! 💰",
                message=f"You received {amount} from your circle payout (Round {event.round})",
                type=NotificationType.PAYMENT_RECEIVED,
                priority=Priority.HIGH,
                action="/transactions-history",
                data={"circleId": event.circle_id, "amount": event.payout_amount, "round": event.round},
            ),
        )

        others = await self._resolver.members(event.circle_id, exclude=actor)
        name = event.user.display_name("A member")
        await self._deliver(
            "members",
            others,
            NotificationPayload(
                title="Circle Payout Completed",
                message=f"{name} received their payout of {amount}",
                type=NotificationType.CIRCLE_MEMBER_PAYOUT,
                priority=Priority.MEDIUM,
                action="/circles",
                data={"circleId": event.circle_id, "round": event.round},
            ),
        )

    async def handle_contribution(self, event: ContributionMade) -> None:
        actor = _user_id(event.user)
        if not actor:
            self._skip(event, "user")
            return

        amount = format_amount(event.amount)
        await self._deliver(
            "contributor",
            [actor],
            NotificationPayload(
                title="Contribution Successful! ✅",
                message=f"You contributed {amount} to your circle (Round {event.round})",
                type=NotificationType.PAYMENT_RECEIVED,
                priority=Priority.HIGH,
                action="/",
                data={"circleId": event.circle_id, "round": event.round},
            ),
        )

        others = await self._resolver.members(event.circle_id, exclude=actor)
        LOGGER.info("Contribution by %s in circle %s; notifying %s others", actor, event.circle_id, len(others))
        name = event.user.display_name("A member")
        await self._deliver(
            "members",
            others,
            NotificationPayload(
                title="Contribution Made ✅",
                message=f"{name} contributed {amount} (Round {event.round})",
                type=NotificationType.CIRCLE_MEMBER_CONTRIBUTED,
                priority=Priority.MEDIUM,
                action="/",
                data={"circleId": event.circle_id, "round": event.round},
            ),
        )

    async def handle_collateral_withdrawn(self, event: CollateralWithdrawn) -> None:
        actor = _user_id(event.user)
        if not actor:
            self._skip(event, "user")
            return

        amount = format_amount(event.amount)
        await self._deliver(
            "withdrawer",
            [actor],
            NotificationPayload(
                title="Collateral Returned 💵",
                message=f"Your collateral of {amount} has been returned",
                type=NotificationType.COLLATERAL_RETURNED,
                priority=Priority.HIGH,
                action="/transactions-history",
                data={"circleId": event.circle_id, "amount": event.amount},
            ),
        )

        others = await self._resolver.members(event.circle_id, exclude=actor)
        name = event.user.display_name("A member")
        await self._deliver(
            "members",
            others,
            NotificationPayload(
                title="Member Withdrew",
                message=f"{name} withdrew their collateral",
                type=NotificationType.CIRCLE_MEMBER_WITHDREW,
                priority=Priority.MEDIUM,
                action="/transactions-history",
                data={"circleId": event.circle_id},
            ),
        )

    async def handle_member_invited(self, event: MemberInvited) -> None:
        invitee = _user_id(event.invitee)
        if not invitee:
            self._skip(event, "invitee")
            return

        inviter_name = event.inviter.display_name("Someone") if event.inviter else "Someone"
        circle_name = await self._resolver.circle_name(event.circle_id)
        await self._deliver(
            "invitee",
            [invitee],
            NotificationPayload(
                title="Circle Invitation 📩",
                message=f'{inviter_name} invited you to join "{circle_name}"',
                type=NotificationType.CIRCLE_INVITE,
                priority=Priority.HIGH,
                action="/browse",
                data={"circleId": event.circle_id, "inviter": _user_id(event.inviter)},
            ),
        )

    async def handle_voting_initiated(self, event: VotingInitiated) -> None:
        members = await self._resolver.members(event.circle_id)
        LOGGER.info("Voting initiated for circle %s; notifying %s members", event.circle_id, len(members))
        await self._deliver(
            "members",
            members,
            NotificationPayload(
                title="Vote Required! 🗳️",
                message=(
                    "Voting has started for your circle. "
                    f"Cast your vote before {_format_date(event.voting_end_at)}"
                ),
                type=NotificationType.VOTE_REQUIRED,
                priority=Priority.HIGH,
                action="/circles",
                data={"circleId": event.circle_id, "votingEndAt": event.voting_end_at},
            ),
        )

    async def handle_vote_executed(self, event: VoteExecuted) -> None:
        members = await self._resolver.members(event.circle_id)
        LOGGER.info(
            "Vote executed for circle %s (started=%s); notifying %s members",
            event.circle_id,
            event.circle_started,
            len(members),
        )
        if event.circle_started:
            notification_type, priority, message = NotificationType.CIRCLE_STARTED, Priority.HIGH, "Circle Started! 🚀"
        else:
            notification_type, priority, message = NotificationType.VOTE_EXECUTED, Priority.MEDIUM, "Circle did not start"
        await self._deliver(
            "members",
            members,
            NotificationPayload(
                title="Voting Results",
                message=message,
                type=notification_type,
                priority=priority,
                action="/",
                data={
                    "circleId": event.circle_id,
                    "started": event.circle_started,
                    "startVotes": event.start_vote_total,
                    "withdrawVotes": event.withdraw_vote_total,
                },
            ),
        )

    async def handle_member_forfeited(self, event: MemberForfeited) -> None:
        forfeited = _user_id(event.forfeited_user)
        if not forfeited:
            self._skip(event, "forfeited user")
            return

        amount = format_amount(event.deduction_amount)
        await self._deliver(
            "forfeited member",
            [forfeited],
            NotificationPayload(
                title="You have been forfeited ⚠️",
                message=f"You were forfeited from your circle. Deduction: {amount}",
                type=NotificationType.MEMBER_FORFEITED,
                priority=Priority.HIGH,
                action="/circles",
                data={"circleId": event.circle_id, "round": event.round, "amount": event.deduction_amount},
            ),
        )

        others = await self._resolver.members(event.circle_id, exclude=forfeited)
        name = event.forfeited_user.display_name("A member")
        await self._deliver(
            "members",
            others,
            NotificationPayload(
                title="Member Forfeited",
                message=f"{name} has been forfeited from the circle",
                type=NotificationType.MEMBER_FORFEITED,
                priority=Priority.MEDIUM,
                action="/circles",
                data={"circleId": event.circle_id, "round": event.round},
            ),
        )

    async def handle_reputation_changed(self, event: ReputationChanged) -> None:
        user = _user_id(event.user)
        if not user:
            self._skip(event, "user")
            return

        direction = "increased" if event.new_score >= event.old_score else "decreased"
        message = f"Your credit score {direction} from {event.old_score} to {event.new_score}"
        if event.reason:
            message = f"{message} ({event.reason})"
        await self._deliver(
            "user",
            [user],
            NotificationPayload(
                title="Credit Score Updated",
                message=message,
                type=NotificationType.CREDIT_SCORE_CHANGED,
                priority=Priority.LOW,
                action="/profile",
                data={"oldScore": event.old_score, "newScore": event.new_score},
            ),
        )

    async def handle_category_changed(self, event: CategoryChanged) -> None:
        user = _user_id(event.user)
        if not user:
            self._skip(event, "user")
            return

        await self._deliver(
            "user",
            [user],
            NotificationPayload(
                title="Credit Category Changed",
                message=f"Your credit category moved from {event.old_category} to {event.new_category}",
                type=NotificationType.CREDIT_SCORE_CHANGED,
                priority=Priority.LOW,
                action="/profile",
                data={"oldCategory": event.old_category, "newCategory": event.new_category},
            ),
        )

    async def handle_referral_paid(self, event: ReferralPaid) -> None:
        referrer = _user_id(event.referrer)
        if not referrer:
            self._skip(event, "referrer")
            return

        amount = format_amount(event.reward_amount)
        referee_name = event.referee.display_name("A friend") if event.referee else "A friend"
        await self._deliver(
            "referrer",
            [referrer],
            NotificationPayload(
                title="Referral Reward Received! 🎁",
                message=f"{referee_name} joined with your referral. You earned {amount}",
                type=NotificationType.PAYMENT_RECEIVED,
                priority=Priority.HIGH,
                action="/transactions-history",
                data={"amount": event.reward_amount, "referee": _user_id(event.referee)},
            ),
        )
