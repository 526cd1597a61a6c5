"""GraphQL ledger adapter.

Implements the core EventSourcePort against a subgraph endpoint. Every
transport, HTTP, or GraphQL failure surfaces as EventSourceError so the
core decides what to retry. Records that cannot be mapped are skipped one
at a time with a warning.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping, Optional, TypeVar

import httpx

from adapters.subgraph_mapper import (
    parse_circle,
    parse_contribution,
    parse_event,
    parse_goal,
    parse_membership,
)
from core.errors import EventSourceError, MalformedEventError
from core.models import Circle, Contribution, Event, EventBatch, EventKind, Goal, Membership

LOGGER = logging.getLogger(__name__)

USER_AGENT = "circlewatch/1.0"
ACTIVE_CIRCLE_STATE = 3

T = TypeVar("T")

_USER = "{ id username fullName }"
_TRANSACTION = "transaction { blockNumber blockTimestamp transactionHash }"

# Subgraph collection and selected fields per event kind, in processing order.
EVENT_COLLECTIONS: dict[EventKind, tuple[str, str]] = {
    EventKind.MEMBER_JOINED: ("circleJoineds", f"circleId user {_USER} currentMembers circleState"),
    EventKind.PAYOUT_DISTRIBUTED: ("payoutDistributeds", f"user {_USER} circleId round payoutAmount"),
    EventKind.CONTRIBUTION_MADE: ("contributionMades", f"user {_USER} circleId round amount"),
    EventKind.COLLATERAL_WITHDRAWN: ("collateralWithdrawns", f"user {_USER} circleId amount"),
    EventKind.MEMBER_INVITED: ("memberInviteds", f"inviter {_USER} invitee {_USER} circleId invitedAt"),
    EventKind.VOTING_INITIATED: ("votingInitiateds", "circleId votingStartAt votingEndAt"),
    EventKind.VOTE_EXECUTED: (
        "voteExecuteds",
        "circleId circleStarted startVoteTotal withdrawVoteTotal withdrawWon",
    ),
    EventKind.MEMBER_FORFEITED: (
        "memberForfeiteds",
        f"forfeiter {_USER} forfeitedUser {_USER} circleId round deductionAmount",
    ),
    EventKind.REPUTATION_CHANGED: ("reputationChangeds", f"user {_USER} oldScore newScore reason"),
    EventKind.CATEGORY_CHANGED: ("categoryChangeds", f"user {_USER} oldCategory newCategory"),
    EventKind.REFERRAL_PAID: ("referralRewardPaids", f"referrer {_USER} referee {_USER} rewardAmount"),
}


def build_events_query() -> str:
    """Build the single incremental query covering every event kind."""

    parts = []
    for collection, fields in EVENT_COLLECTIONS.values():
        parts.append(
            f"""
  {collection}(
    first: $first
    where: {{ transaction_: {{ blockTimestamp_gt: $lastTimestamp }} }}
    orderBy: transaction__blockTimestamp
    orderDirection: asc
  ) {{
    id
    {fields}
    {_TRANSACTION}
  }}"""
        )
    body = "".join(parts)
    return (
        "query GetNewEvents($lastTimestamp: BigInt!, $first: Int!) {"
        f"{body}\n  _meta {{ block {{ number timestamp }} }}\n}}"
    )


def build_block_query(collection: str, fields: str) -> str:
    """Query every record of one collection at exactly one block timestamp, paged by id."""

    return f"""
query GetEventsAtTimestamp($timestamp: BigInt!, $first: Int!, $lastId: ID!) {{
  rows: {collection}(
    first: $first
    where: {{ transaction_: {{ blockTimestamp: $timestamp }}, id_gt: $lastId }}
    orderBy: id
    orderDirection: asc
  ) {{
    id
    {fields}
    {_TRANSACTION}
  }}
}}
"""


# Paged queries expose their collection as ``rows`` and take $first/$lastId.
CIRCLE_MEMBERS_QUERY = """
query GetCircleMembers($circleId: BigInt!, $first: Int!, $lastId: ID!) {
  rows: circleJoineds(
    first: $first
    where: { circleId: $circleId, id_gt: $lastId }
    orderBy: id
    orderDirection: asc
  ) { id user { id } }
}
"""

CIRCLE_QUERY = """
query GetCircle($circleId: BigInt!) {
  circles(where: { circleId: $circleId }) { circleName creator { id } }
}
"""

ACTIVE_GOALS_QUERY = """
query GetActiveGoals($first: Int!, $lastId: ID!) {
  rows: personalGoals(
    first: $first
    where: { isActive: true, id_gt: $lastId }
    orderBy: id
    orderDirection: asc
  ) {
    id goalId goalName goalAmount currentAmount deadline isActive
    user { id username fullName }
  }
}
"""

ACTIVE_CIRCLES_QUERY = """
query GetActiveCircles($state: Int!, $first: Int!, $lastId: ID!) {
  rows: circles(
    first: $first
    where: { state: $state, id_gt: $lastId }
    orderBy: id
    orderDirection: asc
  ) {
    id circleId circleName currentRound nextDeadline contributionAmount
    creator { id }
  }
}
"""

BATCH_MEMBERS_QUERY = """
query GetBatchMembers($circleIds: [BigInt!]!, $first: Int!, $lastId: ID!) {
  rows: circleJoineds(
    first: $first
    where: { circleId_in: $circleIds, id_gt: $lastId }
    orderBy: id
    orderDirection: asc
  ) { id circleId user { id } }
}
"""

BATCH_CONTRIBUTIONS_QUERY = """
query GetBatchContributions($circleIds: [BigInt!]!, $first: Int!, $lastId: ID!) {
  rows: contributionMades(
    first: $first
    where: { circleId_in: $circleIds, id_gt: $lastId }
    orderBy: id
    orderDirection: asc
  ) { id circleId round user { id } }
}
"""


def _record_id(raw: Any) -> Any:
    return raw.get("id") if isinstance(raw, Mapping) else None


def _parse_each(parser: Callable[[Any], Optional[T]], records: Iterable[Any], label: str) -> list[T]:
    """Map raw records, skipping the ones that cannot be parsed."""

    parsed = []
    for raw in records:
        try:
            item = parser(raw)
        except MalformedEventError as exc:
            LOGGER.warning("Skipping malformed %s record %s: %s", label, _record_id(raw), exc)
            continue
        if item is not None:
            parsed.append(item)
    return parsed


class SubgraphEventSource:
    """Ledger queries over HTTP using a shared httpx.AsyncClient."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        page_size: int = 1000,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise RuntimeError("SUBGRAPH_URL is required")
        self._url = url
        self._page_size = page_size
        headers = {"User-Agent": USER_AGENT}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = headers
        self._events_query = build_events_query()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, query: str, variables: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._url,
                json={"query": query, "variables": dict(variables or {})},
                headers=self._headers,
            )
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise EventSourceError(f"Subgraph HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise EventSourceError(f"Subgraph request failed: {exc}") from exc
        except ValueError as exc:
            raise EventSourceError("Subgraph returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise EventSourceError("Subgraph returned an unexpected response body")
        if body.get("errors"):
            messages = "; ".join(
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in body["errors"]
            )
            raise EventSourceError(f"Subgraph query error: {messages}")
        return body.get("data") or {}

    async def _paginate(self, query: str, variables: Optional[Mapping[str, Any]] = None) -> list[Any]:
        """Fetch every ``rows`` record of a paged query, following ids until a short page."""

        rows: list[Any] = []
        last_id = ""
        pages = 0
        while True:
            data = await self._request(query, {**(variables or {}), "first": self._page_size, "lastId": last_id})
            page = data.get("rows") or []
            rows.extend(page)
            pages += 1
            if len(page) < self._page_size:
                break
            next_id = _record_id(page[-1])
            if not next_id or next_id == last_id:
                LOGGER.warning("Stopping pagination after %s rows: last record has no usable id", len(rows))
                break
            last_id = next_id
        if pages > 1:
            LOGGER.info("Fetched %s rows across %s pages", len(rows), pages)
        return rows

    async def query_events_since(self, cursor: int) -> EventBatch:
        data = await self._request(self._events_query, {"lastTimestamp": str(cursor), "first": self._page_size})

        meta_timestamp = _meta_timestamp(data)
        latest = meta_timestamp if meta_timestamp is not None else cursor
        events: list[Event] = []
        for kind, (collection, fields) in EVENT_COLLECTIONS.items():
            records = data.get(collection) or []
            page = _parse_each(lambda raw, kind=kind: parse_event(kind, raw), records, kind.value)
            if len(records) >= self._page_size:
                first_timestamp, last_timestamp = _raw_timestamp(records[0]), _raw_timestamp(records[-1])
                if first_timestamp is None or last_timestamp is None:
                    latest = cursor
                    LOGGER.warning("%s returned a full page without block timestamps; holding cursor", collection)
                elif first_timestamp == last_timestamp:
                    # The whole page sits in one block; capping below it would
                    # refetch the same page forever, so drain that block instead.
                    page = await self._events_at(kind, collection, fields, last_timestamp)
                    latest = min(latest, last_timestamp)
                    LOGGER.warning(
                        "%s returned a full page from block timestamp %s; drained %s records",
                        collection,
                        last_timestamp,
                        len(page),
                    )
                else:
                    # A full page means more rows exist; stop the cursor short of
                    # the page's last timestamp so the tail is fetched next time.
                    latest = min(latest, last_timestamp - 1)
                    LOGGER.info("%s returned a full page; capping cursor at %s", collection, latest)
            events.extend(page)

        return EventBatch(events=tuple(events), latest_timestamp=max(latest, cursor))

    async def _events_at(self, kind: EventKind, collection: str, fields: str, timestamp: int) -> list[Event]:
        records = await self._paginate(build_block_query(collection, fields), {"timestamp": str(timestamp)})
        return _parse_each(lambda raw: parse_event(kind, raw), records, kind.value)

    async def query_circle_members(self, circle_id: str) -> set[str]:
        LOGGER.debug("Querying members for circle %s", circle_id)
        joined = await self._paginate(CIRCLE_MEMBERS_QUERY, {"circleId": str(circle_id)})
        members: set[str] = set()
        for record in joined:
            user = record.get("user") if isinstance(record, Mapping) else None
            address = user.get("id") if isinstance(user, Mapping) else None
            if address:
                members.add(address.lower())
        circle = await self._circle(circle_id)
        creator = circle.get("creator") if circle else None
        if isinstance(creator, Mapping) and creator.get("id"):
            members.add(creator["id"].lower())
        return members

    async def _circle(self, circle_id: str) -> Optional[Mapping[str, Any]]:
        data = await self._request(CIRCLE_QUERY, {"circleId": str(circle_id)})
        circles = data.get("circles") or []
        return circles[0] if circles and isinstance(circles[0], Mapping) else None

    async def query_circle_name(self, circle_id: str) -> Optional[str]:
        circle = await self._circle(circle_id)
        return circle.get("circleName") if circle else None

    async def query_active_goals(self) -> list[Goal]:
        records = await self._paginate(ACTIVE_GOALS_QUERY)
        return [goal for goal in _parse_each(parse_goal, records, "goal") if goal.is_active]

    async def query_active_circles(self) -> list[Circle]:
        records = await self._paginate(ACTIVE_CIRCLES_QUERY, {"state": ACTIVE_CIRCLE_STATE})
        return _parse_each(parse_circle, records, "circle")

    async def query_members_and_contributions(
        self, circle_ids: Iterable[str]
    ) -> tuple[list[Membership], list[Contribution]]:
        variables = {"circleIds": [str(circle_id) for circle_id in circle_ids]}
        members = await self._paginate(BATCH_MEMBERS_QUERY, variables)
        contributions = await self._paginate(BATCH_CONTRIBUTIONS_QUERY, variables)
        return (
            _parse_each(parse_membership, members, "membership"),
            _parse_each(parse_contribution, contributions, "contribution"),
        )


def _meta_timestamp(data: Mapping[str, Any]) -> Optional[int]:
    meta = data.get("_meta")
    block = meta.get("block") if isinstance(meta, Mapping) else None
    timestamp = block.get("timestamp") if isinstance(block, Mapping) else None
    if timestamp is None:
        return None
    try:
        return int(timestamp)
    except (TypeError, ValueError) as exc:
        raise EventSourceError(f"Subgraph returned an invalid block timestamp: {timestamp!r}") from exc


def _raw_timestamp(raw: Any) -> Optional[int]:
    transaction = raw.get("transaction") if isinstance(raw, Mapping) else None
    value = transaction.get("blockTimestamp") if isinstance(transaction, Mapping) else None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
