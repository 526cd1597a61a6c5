"""Ports (interfaces) used by the core.

Ports define the minimal contracts for the ledger, storage, and push
adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from core.models import Circle, Contribution, EventBatch, Goal, Membership, NotificationPayload
from core.preferences import NotificationPreferences


class EventSourcePort(Protocol):
    """Queries against the external ledger. Failures raise EventSourceError."""

    async def query_events_since(self, cursor: int) -> EventBatch:
        ...

    async def query_circle_members(self, circle_id: str) -> set[str]:
        ...

    async def query_circle_name(self, circle_id: str) -> Optional[str]:
        ...

    async def query_active_goals(self) -> list[Goal]:
        ...

    async def query_active_circles(self) -> list[Circle]:
        ...

    async def query_members_and_contributions(
        self, circle_ids: Iterable[str]
    ) -> tuple[list[Membership], list[Contribution]]:
        ...


class CheckpointPort(Protocol):
    """Durable record of the last processed ledger timestamp."""

    def load_cursor(self) -> Optional[int]:
        ...

    def save_cursor(self, cursor: int) -> None:
        ...


class PreferencePort(Protocol):
    """Per-user preference lookup; None means no known subscription."""

    def get_preferences(self, address: str) -> Optional[NotificationPreferences]:
        ...


class SenderPort(Protocol):
    """Push transport. Rejections raise PushDeliveryError."""

    async def send_push(self, address: str, payload: NotificationPayload) -> None:
        ...


class DedupStorePort(Protocol):
    """Durable mirror of the scheduler's dedup keys."""

    def load_dedup_keys(self) -> set[str]:
        ...

    def add_dedup_key(self, key: str) -> None:
        ...

    def clear_dedup_keys(self) -> int:
        ...
