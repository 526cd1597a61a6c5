"""Notification types and the per-user preference filter.

The preference owner stores one boolean per notification type under a
camelCase field name plus a global ``pushEnabled`` switch. The mapping from
type to field is a closed table that must cover every NotificationType.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class NotificationType(str, Enum):
    # Circle
    CIRCLE_MEMBER_JOINED = "circle_member_joined"
    CIRCLE_MEMBER_PAYOUT = "circle_member_payout"
    CIRCLE_MEMBER_CONTRIBUTED = "circle_member_contributed"
    CIRCLE_MEMBER_WITHDREW = "circle_member_withdrew"
    CIRCLE_STARTED = "circle_started"
    CIRCLE_COMPLETED = "circle_completed"
    CIRCLE_DEAD = "circle_dead"
    CONTRIBUTION_DUE = "contribution_due"
    VOTE_REQUIRED = "vote_required"
    VOTE_EXECUTED = "vote_executed"
    MEMBER_FORFEITED = "member_forfeited"
    LATE_PAYMENT_WARNING = "late_payment_warning"
    POSITION_ASSIGNED = "position_assigned"
    # Goals
    GOAL_DEADLINE_2DAYS = "goal_deadline_2days"
    GOAL_DEADLINE_1DAY = "goal_deadline_1day"
    GOAL_COMPLETED = "goal_completed"
    GOAL_CONTRIBUTION_DUE = "goal_contribution_due"
    GOAL_MILESTONE = "goal_milestone"
    # Social
    CIRCLE_INVITE = "circle_invite"
    INVITE_ACCEPTED = "invite_accepted"
    # Financial
    PAYMENT_RECEIVED = "payment_received"
    CREDIT_SCORE_CHANGED = "credit_score_changed"
    WITHDRAWAL_FEE_APPLIED = "withdrawal_fee_applied"
    COLLATERAL_RETURNED = "collateral_returned"
    # System
    SYSTEM_MAINTENANCE = "system_maintenance"
    SECURITY_ALERT = "security_alert"


PUSH_ENABLED_KEY = "pushEnabled"

PREFERENCE_KEYS: Mapping[NotificationType, str] = {
    NotificationType.CIRCLE_MEMBER_JOINED: "circleMemberJoined",
    NotificationType.CIRCLE_MEMBER_PAYOUT: "circleMemberPayout",
    NotificationType.CIRCLE_MEMBER_CONTRIBUTED: "circleMemberContributed",
    NotificationType.CIRCLE_MEMBER_WITHDREW: "circleMemberWithdrew",
    NotificationType.CIRCLE_STARTED: "circleStarted",
    NotificationType.CIRCLE_COMPLETED: "circleCompleted",
    NotificationType.CIRCLE_DEAD: "circleDead",
    NotificationType.CONTRIBUTION_DUE: "contributionDue",
    NotificationType.VOTE_REQUIRED: "voteRequired",
    NotificationType.VOTE_EXECUTED: "voteExecuted",
    NotificationType.MEMBER_FORFEITED: "memberForfeited",
    NotificationType.LATE_PAYMENT_WARNING: "latePaymentWarning",
    NotificationType.POSITION_ASSIGNED: "positionAssigned",
    NotificationType.GOAL_DEADLINE_2DAYS: "goalDeadline2Days",
    NotificationType.GOAL_DEADLINE_1DAY: "goalDeadline1Day",
    NotificationType.GOAL_COMPLETED: "goalCompleted",
    NotificationType.GOAL_CONTRIBUTION_DUE: "goalContributionDue",
    NotificationType.GOAL_MILESTONE: "goalMilestone",
    NotificationType.CIRCLE_INVITE: "circleInvite",
    NotificationType.INVITE_ACCEPTED: "inviteAccepted",
    NotificationType.PAYMENT_RECEIVED: "paymentReceived",
    NotificationType.CREDIT_SCORE_CHANGED: "creditScoreChanged",
    NotificationType.WITHDRAWAL_FEE_APPLIED: "withdrawalFeeApplied",
    NotificationType.COLLATERAL_RETURNED: "collateralReturned",
    NotificationType.SYSTEM_MAINTENANCE: "systemMaintenance",
    NotificationType.SECURITY_ALERT: "securityAlert",
}

_missing = set(NotificationType) - set(PREFERENCE_KEYS)
if _missing:
    raise RuntimeError(f"PREFERENCE_KEYS is missing: {sorted(t.value for t in _missing)}")


@dataclass(frozen=True)
class NotificationPreferences:
    """Read-only view of one user's notification preferences."""

    push_enabled: bool = True
    flags: Mapping[str, bool] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "NotificationPreferences":
        raw = raw or {}
        flags = {key: value for key, value in raw.items() if key != PUSH_ENABLED_KEY and isinstance(value, bool)}
        # Only an explicit false disables push.
        return cls(push_enabled=raw.get(PUSH_ENABLED_KEY) is not False, flags=flags)

    def to_dict(self) -> dict[str, bool]:
        return {PUSH_ENABLED_KEY: self.push_enabled, **self.flags}

    def allows(self, notification_type: NotificationType) -> bool:
        """Return True unless push is off or the type's flag is explicitly false."""

        if not self.push_enabled:
            return False
        return self.flags.get(PREFERENCE_KEYS[notification_type]) is not False
