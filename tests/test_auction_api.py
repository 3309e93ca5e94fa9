"""Auction Service の HTTP 境界: ステータスコードと権限"""

from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from auction_hub.auction import main
from auction_hub.clock import now_ms
from auction_hub.events import EventType
from auction_hub.readiness import ReadinessState

ADMIN = {"X-User": "admin", "X-Role": "admin"}
ALICE = {"X-User": "alice", "X-Role": "bidder"}
BOB = {"X-User": "bob"}


@pytest.fixture
async def client(monkeypatch, session_factory, redis, queue):
    monkeypatch.setattr(main, "async_session", session_factory)
    monkeypatch.setattr(main, "redis_pool", redis)
    monkeypatch.setattr(main, "expiry_queue", queue)
    monkeypatch.setattr(main, "readiness", ReadinessState())
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create(client, start_price=100, **extra):
    body = {"title": "Vintage Amp", "startPrice": start_price, **extra}
    resp = await client.post("/auctions", json=body, headers=ADMIN)
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_admin_creates_auction(client, queue, published):
    auction = await _create(client, start_price=100)

    assert auction["title"] == "Vintage Amp"
    assert auction["currentPrice"] == 100
    assert auction["isActive"] is True
    assert auction["version"] == 0
    assert auction["bidders"] == []
    assert auction["endTime"] > now_ms()
    assert await queue.scheduled_at(auction["id"]) is not None
    assert published[0].type is EventType.AUCTION_CREATED


@pytest.mark.asyncio
async def test_create_requires_admin(client):
    body = {"title": "Amp", "startPrice": 10}
    assert (await client.post("/auctions", json=body)).status_code == 401
    assert (await client.post("/auctions", json=body, headers=ALICE)).status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"title": "", "startPrice": 10},
        {"title": "   ", "startPrice": 10},
        {"title": "Amp", "startPrice": -1},
        {"title": "Amp", "startPrice": 10, "endTime": "2001-01-01T00:00:00Z"},
    ],
)
async def test_create_rejects_invalid_input(client, body):
    resp = await client.post("/auctions", json=body, headers=ADMIN)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_bid_flow_status_codes(client, published):
    auction = await _create(client, start_price=100)
    url = f"/auctions/{auction['id']}/bid"

    assert (await client.post(url, json={"amount": 101})).status_code == 401

    resp = await client.post(url, json={"amount": 90}, headers=ALICE)
    assert resp.status_code == 400
    assert "Minimum bid" in resp.json()["error"]

    resp = await client.post(url, json={"amount": 101}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["version"] == 1
    assert resp.json()["highestBidder"] == "alice"

    resp = await client.post(url, json={"amount": 150, "expectedVersion": 0}, headers=BOB)
    assert resp.status_code == 409

    resp = await client.post(url, json={"amount": 150, "expectedVersion": 1}, headers=BOB)
    assert resp.status_code == 200
    assert resp.json()["bidders"] == ["alice", "bob"]

    assert [e.type for e in published].count(EventType.BID_PLACED) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {"amount": "lots"},
        {"amount": -3},
        {},
        {"amount": 200, "expectedVersion": -1},
    ],
)
async def test_bid_rejects_invalid_input(client, body):
    auction = await _create(client)
    resp = await client.post(f"/auctions/{auction['id']}/bid", json=body, headers=ALICE)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_bid_on_missing_auction(client):
    resp = await client.post("/auctions/nope/bid", json={"amount": 10}, headers=ALICE)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_delete_auction(client, published):
    auction = await _create(client)

    assert (await client.delete(f"/auctions/{auction['id']}", headers=ALICE)).status_code == 403
    resp = await client.delete(f"/auctions/{auction['id']}", headers=ADMIN)
    assert resp.status_code == 200

    assert (await client.get(f"/auctions/{auction['id']}")).status_code == 404
    assert (await client.delete(f"/auctions/{auction['id']}", headers=ADMIN)).status_code == 404
    assert published[-1].type is EventType.AUCTION_DELETED
    assert published[-1].payload == {"auctionId": auction["id"]}


@pytest.mark.asyncio
async def test_list_shows_only_active_auctions(client, make_auction):
    live = await _create(client)
    ended = await make_auction(active=False)

    ids = [a["id"] for a in (await client.get("/auctions")).json()]

    assert live["id"] in ids
    assert ended not in ids


@pytest.mark.asyncio
async def test_bid_history(client):
    auction = await _create(client, start_price=100)
    url = f"/auctions/{auction['id']}/bid"
    await client.post(url, json={"amount": 110}, headers=ALICE)
    await client.post(url, json={"amount": 120}, headers=BOB)

    history = (await client.get(f"/auctions/{auction['id']}/bids")).json()

    assert [(b["bidder"], b["amount"]) for b in history] == [("bob", 120.0), ("alice", 110.0)]
    assert (await client.get("/auctions/nope/bids")).status_code == 404


@pytest.mark.asyncio
async def test_seed_only_fills_an_empty_store(client):
    first = (await client.post("/seed", headers=ADMIN)).json()
    second = (await client.post("/seed", headers=ADMIN)).json()

    assert first["created"] == 3
    assert second["created"] == 0
    assert len((await client.get("/auctions")).json()) == 3


@pytest.mark.asyncio
async def test_server_time(client):
    before = now_ms()
    server_time = (await client.get("/time")).json()["serverTime"]
    assert before <= server_time <= now_ms()


@pytest.mark.asyncio
async def test_readiness_flips_with_state(client):
    assert (await client.get("/healthz")).status_code == 200

    resp = await client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["status"] == "not_ready"

    main.readiness.mark_ready()
    resp = await client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ready"}


@pytest.mark.asyncio
async def test_bus_outage_is_a_transport_failure(client, monkeypatch):
    auction = await _create(client)
    broken = AsyncMock()
    broken.publish.side_effect = RedisError("connection refused")
    monkeypatch.setattr(main, "redis_pool", broken)

    resp = await client.post(
        f"/auctions/{auction['id']}/bid", json={"amount": 500}, headers=ALICE
    )

    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_store_outage_is_a_transport_failure(client, mocker):
    auction = await _create(client)
    mocker.patch.object(
        AsyncSession, "execute",
        side_effect=ConnectionRefusedError(111, "Connect call failed"),
    )

    resp = await client.post(
        f"/auctions/{auction['id']}/bid", json={"amount": 500}, headers=ALICE
    )

    assert resp.status_code == 503
    assert "error" in resp.json()
