"""Dedup key registry for condition-triggered notifications (core domain)."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from core.ports import DedupStorePort

LOGGER = logging.getLogger(__name__)


def goal_deadline_key(goal_id: str, days: int) -> str:
    suffix = "1day" if days == 1 else f"{days}days"
    return f"goal-deadline-{suffix}:{goal_id}"


def goal_milestone_key(goal_id: str, milestone: int) -> str:
    return f"goal-milestone:{goal_id}:{milestone}"


def goal_completed_key(goal_id: str) -> str:
    return f"goal-completed:{goal_id}"


def circle_deadline_key(circle_id: str, round_: str, final_warning: bool) -> str:
    kind = "circle-late-warning" if final_warning else "circle-contribution-due"
    return f"{kind}:{circle_id}:{round_}"


class DedupRegistry:
    """Thread-safe set of already-notified condition keys.

    When a store is given, the set is loaded from it once and every insert
    and clear is written through, so a restart keeps the current epoch.
    """

    def __init__(self, store: Optional[DedupStorePort] = None) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._keys: set[str] = set(store.load_dedup_keys()) if store else set()

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def add(self, key: str) -> bool:
        """Insert a key; return False if it was already present."""

        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            if self._store is not None:
                self._store.add_dedup_key(key)
            return True

    def clear(self) -> int:
        """Drop every key and return how many were removed."""

        with self._lock:
            removed = len(self._keys)
            self._keys.clear()
            if self._store is not None:
                self._store.clear_dedup_keys()
        LOGGER.info("Dedup registry cleared (%s keys)", removed)
        return removed
