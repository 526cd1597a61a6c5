from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from adapters.subgraph_source import SubgraphEventSource
from core.errors import EventSourceError
from core.models import EventKind

URL = "https://subgraph.example/graphql"


def _source(handler, page_size: int = 1000, api_key=None) -> SubgraphEventSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SubgraphEventSource(URL, api_key=api_key, page_size=page_size, client=client)


def _joined(event_id: str, timestamp: int) -> dict:
    return {
        "id": event_id,
        "circleId": "1",
        "user": {"id": "0xa"},
        "transaction": {"blockTimestamp": str(timestamp)},
    }


def test_events_query_returns_batch_with_meta_timestamp() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(
            200,
            json={
                "data": {
                    "circleJoineds": [_joined("j1", 510)],
                    "payoutDistributeds": [
                        {
                            "id": "p1",
                            "circleId": "1",
                            "user": {"id": "0xb"},
                            "round": "1",
                            "payoutAmount": "5",
                            "transaction": {"blockTimestamp": "505"},
                        }
                    ],
                    "_meta": {"block": {"number": 99, "timestamp": 600}},
                }
            },
        )

    batch = asyncio.run(_source(handler, api_key="secret").query_events_since(500))

    assert [event.kind for event in batch.events] == [EventKind.MEMBER_JOINED, EventKind.PAYOUT_DISTRIBUTED]
    assert batch.latest_timestamp == 600
    body = json.loads(requests[0].content)
    assert body["variables"] == {"lastTimestamp": "500", "first": 1000}
    assert "orderBy: transaction__blockTimestamp" in body["query"]
    assert requests[0].headers["Authorization"] == "Bearer secret"
    assert requests[0].headers["User-Agent"].startswith("circlewatch/")


def test_full_page_caps_latest_timestamp() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "circleJoineds": [_joined("j1", 510), _joined("j2", 520)],
                    "_meta": {"block": {"timestamp": 900}},
                }
            },
        )

    batch = asyncio.run(_source(handler, page_size=2).query_events_since(500))

    assert len(batch) == 2
    assert batch.latest_timestamp == 519


def test_malformed_records_are_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "data": {
                    "circleJoineds": [{"id": "bad", "user": {"id": "0xa"}}, _joined("j2", 520)],
                    "_meta": {"block": {"timestamp": 600}},
                }
            },
        )

    batch = asyncio.run(_source(handler).query_events_since(500))

    assert [event.id for event in batch.events] == ["j2"]


def test_missing_meta_keeps_cursor() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {}})

    batch = asyncio.run(_source(handler).query_events_since(500))

    assert len(batch) == 0
    assert batch.latest_timestamp == 500


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, json={"errors": [{"message": "indexer behind"}]}),
        httpx.Response(200, text="<html>"),
    ],
)
def test_failures_raise_event_source_error(response: httpx.Response) -> None:
    with pytest.raises(EventSourceError):
        asyncio.run(_source(lambda request: response).query_events_since(500))


def test_transport_error_raises_event_source_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(EventSourceError):
        asyncio.run(_source(handler).query_circle_name("1"))


def test_circle_members_include_creator() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        query = json.loads(request.content)["query"]
        if "GetCircleMembers" in query:
            rows = [{"id": "j1", "user": {"id": "0xA"}}, {"id": "j2", "user": {"id": "0xb"}}]
            return httpx.Response(200, json={"data": {"rows": rows}})
        return httpx.Response(200, json={"data": {"circles": [{"creator": {"id": "0xCreator"}}]}})

    members = asyncio.run(_source(handler).query_circle_members("7"))

    assert members == {"0xa", "0xb", "0xcreator"}


def test_circle_members_follow_pages_past_the_first() -> None:
    seen: list[dict] = []
    joined = [{"id": f"j{n}", "user": {"id": f"0x{n}"}} for n in range(1, 6)]

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "GetCircleMembers" not in body["query"]:
            return httpx.Response(200, json={"data": {"circles": []}})
        seen.append(body["variables"])
        after = [row for row in joined if row["id"] > body["variables"]["lastId"]]
        return httpx.Response(200, json={"data": {"rows": after[: body["variables"]["first"]]}})

    members = asyncio.run(_source(handler, page_size=2).query_circle_members("7"))

    assert members == {"0x1", "0x2", "0x3", "0x4", "0x5"}
    assert [variables["lastId"] for variables in seen] == ["", "j2", "j4"]


def test_batch_members_and_contributions() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen.append(body)
        if "GetBatchMembers" in body["query"]:
            rows = [{"id": "m1", "circleId": "7", "user": {"id": "0xa"}}, {"id": "m2", "circleId": "7", "user": None}]
        else:
            rows = [{"id": "c1", "circleId": "7", "round": "2", "user": {"id": "0xa"}}]
        return httpx.Response(200, json={"data": {"rows": rows}})

    memberships, contributions = asyncio.run(_source(handler).query_members_and_contributions(["7", "8"]))

    assert [body["variables"] for body in seen] == [
        {"circleIds": ["7", "8"], "first": 1000, "lastId": ""},
        {"circleIds": ["7", "8"], "first": 1000, "lastId": ""},
    ]
    assert [m.address for m in memberships] == ["0xa"]
    assert [(c.circle_id, c.round) for c in contributions] == [("7", "2")]


def test_contributions_beyond_one_page_are_all_returned() -> None:
    paid = [{"id": f"c{n:02d}", "circleId": "7", "round": "2", "user": {"id": f"0x{n}"}} for n in range(5)]

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "GetBatchMembers" in body["query"]:
            return httpx.Response(200, json={"data": {"rows": []}})
        after = [row for row in paid if row["id"] > body["variables"]["lastId"]]
        return httpx.Response(200, json={"data": {"rows": after[: body["variables"]["first"]]}})

    _, contributions = asyncio.run(_source(handler, page_size=2).query_members_and_contributions(["7"]))

    assert sorted(c.address for c in contributions) == [f"0x{n}" for n in range(5)]


def test_unparseable_amount_is_skipped_and_window_advances() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        payout = {
            "id": "p1",
            "circleId": "1",
            "user": {"id": "0xa"},
            "round": "1",
            "payoutAmount": "1.5e18",
            "transaction": {"blockTimestamp": "510"},
        }
        return httpx.Response(
            200,
            json={"data": {"payoutDistributeds": [payout], "_meta": {"block": {"timestamp": 520}}}},
        )

    batch = asyncio.run(_source(handler).query_events_since(500))

    assert len(batch) == 0
    assert batch.latest_timestamp == 520


def test_invalid_block_timestamp_raises_event_source_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"_meta": {"block": {"timestamp": "soon"}}}})

    with pytest.raises(EventSourceError):
        asyncio.run(_source(handler).query_events_since(500))


def test_full_page_in_one_block_is_drained_by_id() -> None:
    block = [_joined(f"j{n}", 510) for n in range(1, 6)]
    drained: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "GetEventsAtTimestamp" in body["query"]:
            drained.append(body["variables"])
            after = [row for row in block if row["id"] > body["variables"]["lastId"]]
            return httpx.Response(200, json={"data": {"rows": after[: body["variables"]["first"]]}})
        return httpx.Response(
            200,
            json={"data": {"circleJoineds": block[:2], "_meta": {"block": {"timestamp": 900}}}},
        )

    batch = asyncio.run(_source(handler, page_size=2).query_events_since(500))

    assert [event.id for event in batch.events] == ["j1", "j2", "j3", "j4", "j5"]
    assert batch.latest_timestamp == 510
    assert drained[0] == {"timestamp": "510", "first": 2, "lastId": ""}


def _goal_row(goal_id: str, goal_amount: str = "100", deadline: str = "900") -> dict:
    return {
        "id": goal_id,
        "goalAmount": goal_amount,
        "currentAmount": "0",
        "deadline": deadline,
        "isActive": True,
        "user": {"id": "0xowner"},
    }


def test_malformed_goal_is_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [_goal_row("g1"), _goal_row("g2", deadline="tomorrow"), _goal_row("g3", goal_amount="1e2")]
        return httpx.Response(200, json={"data": {"rows": rows}})

    goals = asyncio.run(_source(handler).query_active_goals())

    assert [goal.id for goal in goals] == ["g1"]


def test_malformed_circle_is_skipped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [
            {"id": "c1", "circleId": "7", "currentRound": "2", "nextDeadline": "900", "contributionAmount": "5"},
            {"id": "c2", "circleId": "8", "currentRound": "1", "nextDeadline": "soon", "contributionAmount": "5"},
            "not-a-circle",
        ]
        return httpx.Response(200, json={"data": {"rows": rows}})

    circles = asyncio.run(_source(handler).query_active_circles())

    assert [circle.circle_id for circle in circles] == ["7"]


def test_requires_url() -> None:
    with pytest.raises(RuntimeError):
        SubgraphEventSource("")
