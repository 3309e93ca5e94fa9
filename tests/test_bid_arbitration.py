"""入札調停 (楽観的並行性制御) のテスト"""

import asyncio
import math

import pytest

from auction_hub.auction import commands, queries
from auction_hub.errors import BusinessRuleViolation, Conflict, InvalidInput, NotFound
from auction_hub.events import EventType


async def _bid(session_factory, redis, auction_id, bidder, amount, version=None, **kwargs):
    async with session_factory() as session:
        return await commands.place_bid(
            session, redis, auction_id, bidder, amount, version, **kwargs
        )


async def _get(session_factory, auction_id):
    async with session_factory() as session:
        return await queries.get_auction(session, auction_id)


@pytest.mark.asyncio
async def test_concrete_scenario(session_factory, redis, make_auction, published):
    """開始 100 → 90 は拒否 → 101 受理 → 105 と 110 が同じ version=1 で競合"""
    auction_id = await make_auction(start_price=100)

    with pytest.raises(BusinessRuleViolation):
        await _bid(session_factory, redis, auction_id, "u1", 90)

    auction = await _bid(session_factory, redis, auction_id, "u1", 101)
    assert auction["currentPrice"] == 101
    assert auction["version"] == 1
    assert auction["bidders"] == ["u1"]

    winner = await _bid(session_factory, redis, auction_id, "u2", 105, version=1)
    assert winner["version"] == 2
    assert winner["currentPrice"] == 105
    assert winner["highestBidder"] == "u2"

    with pytest.raises(Conflict):
        await _bid(session_factory, redis, auction_id, "u3", 110, version=1)

    auction = await _get(session_factory, auction_id)
    assert auction["version"] == 2
    assert auction["currentPrice"] == 105
    assert set(auction["bidders"]) == {"u1", "u2"}
    assert [e.type for e in published] == [EventType.BID_PLACED, EventType.BID_PLACED]


@pytest.mark.asyncio
async def test_concurrent_bidders_on_same_version_only_one_commits(
    session_factory, redis, make_auction, published
):
    auction_id = await make_auction(start_price=100)
    amounts = [101, 102, 103, 104, 105]

    results = await asyncio.gather(
        *[
            _bid(session_factory, redis, auction_id, f"u{i}", amount, version=0)
            for i, amount in enumerate(amounts)
        ],
        return_exceptions=True,
    )

    accepted = [r for r in results if isinstance(r, dict)]
    rejected = [r for r in results if not isinstance(r, dict)]
    assert len(accepted) == 1
    assert all(isinstance(r, (Conflict, BusinessRuleViolation)) for r in rejected)

    auction = await _get(session_factory, auction_id)
    assert auction["version"] == 1
    assert auction["currentPrice"] == accepted[0]["currentPrice"]
    assert auction["bidders"] == [accepted[0]["highestBidder"]]
    assert len(published) == 1


@pytest.mark.asyncio
async def test_version_increases_by_one_per_accepted_bid(session_factory, redis, make_auction):
    auction_id = await make_auction(start_price=100)

    versions = []
    for i, amount in enumerate([101, 110, 120, 150]):
        auction = await _bid(session_factory, redis, auction_id, f"u{i % 2}", amount)
        versions.append(auction["version"])

    assert versions == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_bidders_set_has_no_duplicates(session_factory, redis, make_auction):
    auction_id = await make_auction(start_price=100)

    await _bid(session_factory, redis, auction_id, "u1", 101)
    await _bid(session_factory, redis, auction_id, "u2", 102)
    auction = await _bid(session_factory, redis, auction_id, "u1", 103)

    assert sorted(auction["bidders"]) == ["u1", "u2"]


@pytest.mark.asyncio
async def test_bid_placed_event_carries_new_version(session_factory, redis, make_auction, published):
    auction_id = await make_auction(start_price=100)

    await _bid(session_factory, redis, auction_id, "u1", 101, trace_id="trace-9")

    (envelope,) = published
    assert envelope.type is EventType.BID_PLACED
    assert envelope.trace_id == "trace-9"
    assert envelope.payload == {
        "auctionId": auction_id,
        "amount": 101.0,
        "bidder": "u1",
        "bidders": ["u1"],
        "version": 1,
    }


@pytest.mark.asyncio
async def test_accepted_bid_is_recorded_in_history(session_factory, redis, make_auction):
    auction_id = await make_auction(start_price=100)

    await _bid(session_factory, redis, auction_id, "u1", 101)
    await _bid(session_factory, redis, auction_id, "u2", 120)

    async with session_factory() as session:
        history = await queries.list_bids(session, auction_id)
    assert [(b["bidder"], b["amount"]) for b in history] == [("u2", 120.0), ("u1", 101.0)]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, math.nan, math.inf, "abc", None, True])
async def test_invalid_amount_rejected_before_store_access(
    session_factory, redis, make_auction, published, amount
):
    auction_id = await make_auction(start_price=100)

    with pytest.raises(InvalidInput):
        await _bid(session_factory, redis, auction_id, "u1", amount)

    assert (await _get(session_factory, auction_id))["version"] == 0
    assert published == []


@pytest.mark.asyncio
@pytest.mark.parametrize("version", [-1, 1.5, "1"])
async def test_invalid_expected_version(session_factory, redis, make_auction, version):
    auction_id = await make_auction(start_price=100)
    with pytest.raises(InvalidInput):
        await _bid(session_factory, redis, auction_id, "u1", 101, version=version)


@pytest.mark.asyncio
async def test_missing_auction(session_factory, redis):
    with pytest.raises(NotFound):
        await _bid(session_factory, redis, "nope", "u1", 101)


@pytest.mark.asyncio
async def test_inactive_auction_rejected(session_factory, redis, make_auction, published):
    auction_id = await make_auction(start_price=100, active=False)

    with pytest.raises(BusinessRuleViolation):
        await _bid(session_factory, redis, auction_id, "u1", 500)
    assert published == []


@pytest.mark.asyncio
async def test_auction_past_end_time_rejected(session_factory, redis, make_auction):
    auction_id = await make_auction(start_price=100, ends_in_ms=-1000)

    with pytest.raises(BusinessRuleViolation):
        await _bid(session_factory, redis, auction_id, "u1", 500)

    auction = await _get(session_factory, auction_id)
    assert auction["currentPrice"] == 100
    assert auction["highestBidder"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize("increment", [1, 5, 25])
async def test_minimum_increment_enforced(session_factory, redis, make_auction, increment):
    auction_id = await make_auction(start_price=100)

    with pytest.raises(BusinessRuleViolation):
        await _bid(
            session_factory, redis, auction_id, "u1", 100 + increment - 1,
            min_increment=increment,
        )

    auction = await _bid(
        session_factory, redis, auction_id, "u1", 100 + increment,
        min_increment=increment,
    )
    assert auction["currentPrice"] == 100 + increment


@pytest.mark.asyncio
async def test_stale_version_conflicts_without_side_effects(
    session_factory, redis, make_auction, published
):
    auction_id = await make_auction(start_price=100)
    await _bid(session_factory, redis, auction_id, "u1", 101)
    published.clear()

    with pytest.raises(Conflict):
        await _bid(session_factory, redis, auction_id, "u2", 200, version=0)

    auction = await _get(session_factory, auction_id)
    assert auction["currentPrice"] == 101
    assert auction["bidders"] == ["u1"]
    assert published == []
    async with session_factory() as session:
        assert len(await queries.list_bids(session, auction_id)) == 1


@pytest.mark.asyncio
async def test_bid_exactly_at_fractional_minimum_is_accepted(
    session_factory, redis, make_auction
):
    auction_id = await make_auction(start_price=0.1)

    auction = await _bid(
        session_factory, redis, auction_id, "u1", 0.3, min_increment=0.2
    )

    assert auction["currentPrice"] == 0.3
    assert auction["highestBidder"] == "u1"
