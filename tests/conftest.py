"""共通フィクスチャ: SQLite (aiosqlite) のストアと fakeredis のバス"""

import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from sqlalchemy import text

from auction_hub import events
from auction_hub.auction import commands
from auction_hub.clock import now_ms
from auction_hub.database import create_all, make_session_factory
from auction_hub.task_queue import DelayedTaskQueue

HOUR_MS = 60 * 60 * 1000


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = make_session_factory(
        f"sqlite+aiosqlite:///{tmp_path / 'auctions.db'}"
    )
    await create_all(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis):
    return DelayedTaskQueue(redis, "test-expiry")


@pytest.fixture
def published(monkeypatch):
    """発行されたエンベロープを記録する (実際の発行も行う)"""
    envelopes = []
    original = events.publish_event

    async def recording(*args, **kwargs):
        envelope = await original(*args, **kwargs)
        envelopes.append(envelope)
        return envelope

    monkeypatch.setattr(events, "publish_event", recording)
    return envelopes


@pytest.fixture
def make_auction(session_factory):
    """ストアに直接オークションを作る (期限切れの状態も作れる)"""
    counter = {"n": 0}

    async def _make(
        start_price: float = 100,
        ends_in_ms: int = HOUR_MS,
        active: bool = True,
    ) -> str:
        counter["n"] += 1
        auction_id = f"auction-{counter['n']}"
        now = now_ms()
        async with session_factory() as session:
            await commands.insert_auction(
                session, auction_id, f"Lot {counter['n']}",
                start_price, now + ends_in_ms, now + counter["n"],
            )
            if not active:
                await expire_directly(session, auction_id)
            await session.commit()
        return auction_id

    return _make


async def expire_directly(session, auction_id: str) -> None:
    await session.execute(
        text("UPDATE auctions SET is_active = FALSE WHERE id = :id"),
        {"id": auction_id},
    )
