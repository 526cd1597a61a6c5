"""Circle recipient resolution (core domain)."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from core.errors import EventSourceError
from core.ports import EventSourcePort

LOGGER = logging.getLogger(__name__)

DEFAULT_CIRCLE_NAME = "your circle"


def normalize_addresses(addresses: Iterable[Optional[str]]) -> set[str]:
    """Lowercase and deduplicate addresses, dropping empty values."""

    return {address.lower() for address in addresses if address}


def exclude_address(members: Iterable[str], excluded: Optional[str]) -> list[str]:
    """Return members without ``excluded``, compared case-insensitively."""

    if not excluded:
        return sorted(members)
    lowered = excluded.lower()
    return sorted(member for member in members if member.lower() != lowered)


class RecipientResolver:
    """Resolve circle audiences from the ledger.

    Membership is re-queried for every call; there is no cache.
    """

    def __init__(self, source: EventSourcePort) -> None:
        self._source = source

    async def members(self, circle_id: str, exclude: Optional[str] = None) -> list[str]:
        """Return the circle's members (joined plus creator), minus ``exclude``."""

        members = normalize_addresses(await self._source.query_circle_members(circle_id))
        LOGGER.debug("Circle %s has %s members", circle_id, len(members))
        return exclude_address(members, exclude)

    async def circle_name(self, circle_id: str) -> str:
        """Return the circle's display name, falling back to a generic label."""

        try:
            name = await self._source.query_circle_name(circle_id)
        except EventSourceError as exc:
            LOGGER.warning("Could not fetch name for circle %s: %s", circle_id, exc)
            return DEFAULT_CIRCLE_NAME
        return name or DEFAULT_CIRCLE_NAME
