"""
Auction Service — コマンドハンドラ (書き込み側)

入札の調停 (Bid Arbitration) が中核。ロックは使わず、
ストアの条件付き UPDATE 1 回で同時入札を直列化する (楽観的並行性制御)。

  UPDATE auctions SET 価格・最高入札者・version+1
  WHERE id = :id
    AND is_active = TRUE          ← まだ開催中
    AND end_time > :now           ← まだ期限内
    AND current_price < :amount   ← まだ自分の方が高い
    AND version = :version        ← 読んだ時点から誰も入札していない

競合に負けた側は述語に一致せず 0 行 → Conflict。再読み込みして再試行する。
入札者集合への追加と入札履歴の追記は同じトランザクションでコミットする。
"""

import logging
import math
from decimal import Decimal
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .. import events
from ..clock import now_ms
from ..config import MIN_BID_INCREMENT
from ..errors import BusinessRuleViolation, Conflict, InvalidInput, NotFound
from ..events import EventType
from ..task_queue import DelayedTaskQueue
from . import expiry, queries
from .queries import AUCTION_COLUMNS

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MS = 24 * 60 * 60 * 1000


def _valid_amount(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


async def place_bid(
    session: AsyncSession,
    redis: aioredis.Redis,
    auction_id: str,
    bidder: str,
    amount: float,
    expected_version: int | None = None,
    trace_id: str | None = None,
    *,
    min_increment: float = MIN_BID_INCREMENT,
) -> dict:
    """
    入札コマンド

    1. 入力を検証 (ストアに触れる前)
    2. オークションを読み、開催中・期限内・最低入札額を確認
    3. 条件付き UPDATE でコミット (不一致なら Conflict)
    4. 入札者集合・入札履歴を同じトランザクションで保存
    5. BID_PLACED を発行 (新しい version 付き)
    """
    if not _valid_amount(amount):
        raise InvalidInput("Enter a valid amount")
    amount = float(amount)
    if expected_version is not None and (
        isinstance(expected_version, bool)
        or not isinstance(expected_version, int)
        or expected_version < 0
    ):
        raise InvalidInput("expectedVersion must be a non-negative integer")

    auction = await queries.get_auction(session, auction_id)
    if not auction:
        raise NotFound("Auction not found")
    if not auction["isActive"]:
        raise BusinessRuleViolation("Auction is no longer active")
    if auction["endTime"] <= now_ms():
        raise BusinessRuleViolation("Auction has ended")

    # 0.1 + 0.2 の丸め誤差で境界値を弾かない
    min_required = Decimal(str(auction["currentPrice"])) + Decimal(str(min_increment))
    if Decimal(str(amount)) < min_required:
        raise BusinessRuleViolation(f"Minimum bid is {min_required:.2f}")

    # 呼び出し側が version を渡さなければ直前に読んだ値を使う
    version = expected_version if expected_version is not None else auction["version"]

    result = await session.execute(
        text(f"""
            UPDATE auctions
            SET current_price = :amount,
                highest_bidder = :bidder,
                version = version + 1
            WHERE id = :id
              AND is_active = TRUE
              AND end_time > :now
              AND current_price < :amount
              AND version = :version
            RETURNING {AUCTION_COLUMNS}
        """),
        {
            "id": auction_id,
            "amount": amount,
            "bidder": bidder,
            "now": now_ms(),
            "version": version,
        },
    )
    row = result.fetchone()
    if row is None:
        await session.rollback()
        logger.info(
            "Bid conflict on %s: bidder=%s amount=%s version=%s",
            auction_id, bidder, amount, version,
        )
        raise Conflict("Concurrent bid or price too low - reload and try again")

    await session.execute(
        text("""
            INSERT INTO auction_bidders (auction_id, bidder)
            VALUES (:auction_id, :bidder)
            ON CONFLICT (auction_id, bidder) DO NOTHING
        """),
        {"auction_id": auction_id, "bidder": bidder},
    )
    await session.execute(
        text("""
            INSERT INTO bids (id, auction_id, bidder, amount, placed_at)
            VALUES (:id, :auction_id, :bidder, :amount, :placed_at)
        """),
        {
            "id": str(uuid4()),
            "auction_id": auction_id,
            "bidder": bidder,
            "amount": amount,
            "placed_at": now_ms(),
        },
    )
    bidders = await queries.bidders_for(session, [auction_id])
    updated = queries.auction_from_row(row, bidders[auction_id])

    await session.commit()
    logger.info(
        "Bid accepted on %s: bidder=%s amount=%s version=%d",
        auction_id, bidder, amount, updated["version"],
    )

    await events.publish_event(
        redis,
        EventType.BID_PLACED,
        {
            "auctionId": auction_id,
            "amount": updated["currentPrice"],
            "bidder": bidder,
            "bidders": updated["bidders"],
            "version": updated["version"],
        },
        trace_id,
    )
    return updated


async def create_auction(
    session: AsyncSession,
    redis: aioredis.Redis,
    queue: DelayedTaskQueue,
    title: str,
    start_price: float = 0,
    end_time: int | None = None,
    trace_id: str | None = None,
) -> dict:
    """
    オークション作成コマンド (管理者)

    1. 行を INSERT (isActive=true, version=0)
    2. 終了時刻に期限切れジョブを登録
    3. AUCTION_CREATED を発行 (スナップショット全体)
    """
    title = (title or "").strip()
    if not title:
        raise InvalidInput("Title is required")
    if isinstance(start_price, bool) or not math.isfinite(start_price) or start_price < 0:
        raise InvalidInput("startPrice must be a non-negative number")

    now = now_ms()
    if end_time is None:
        end_time = now + DEFAULT_DURATION_MS
    if end_time <= now:
        raise InvalidInput("endTime must be in the future")

    auction_id = str(uuid4())
    await insert_auction(session, auction_id, title, start_price, end_time, now)
    await session.commit()

    auction = await queries.get_auction(session, auction_id)
    await expiry.schedule_expiry(queue, auction)
    await events.publish_event(
        redis, EventType.AUCTION_CREATED, {"auction": auction}, trace_id
    )
    logger.info("Auction %s created, ends at %d", auction_id, end_time)
    return auction


async def insert_auction(
    session: AsyncSession,
    auction_id: str,
    title: str,
    start_price: float,
    end_time: int,
    created_at: int,
) -> None:
    await session.execute(
        text("""
            INSERT INTO auctions
                (id, title, start_price, current_price, highest_bidder,
                 end_time, is_active, version, created_at)
            VALUES
                (:id, :title, :price, :price, NULL, :end_time, TRUE, 0, :created_at)
        """),
        {
            "id": auction_id,
            "title": title,
            "price": float(start_price),
            "end_time": end_time,
            "created_at": created_at,
        },
    )


async def delete_auction(
    session: AsyncSession,
    redis: aioredis.Redis,
    auction_id: str,
    trace_id: str | None = None,
) -> None:
    """
    オークション削除コマンド (管理者)

    入札履歴 (bids) は監査ログとして残す。
    登録済みの期限切れジョブは取り消さない。実行時に対象が無く何もしない。
    """
    result = await session.execute(
        text("DELETE FROM auctions WHERE id = :id"), {"id": auction_id}
    )
    if result.rowcount == 0:
        await session.rollback()
        raise NotFound("Auction not found")
    await session.execute(
        text("DELETE FROM auction_bidders WHERE auction_id = :id"), {"id": auction_id}
    )
    await session.commit()

    await events.publish_event(
        redis, EventType.AUCTION_DELETED, {"auctionId": auction_id}, trace_id
    )
    logger.info("Auction %s deleted", auction_id)


SEED_AUCTIONS = [
    ("iPhone 15 Pro", 500),
    ("MacBook Air M2", 800),
    ("PlayStation 5", 300),
]


async def seed_auctions(
    session: AsyncSession,
    redis: aioredis.Redis,
    queue: DelayedTaskQueue,
) -> list[dict]:
    """ストアが空のときだけデモ用オークションを作成する。"""
    if await queries.count_auctions(session) > 0:
        return []
    end_time = now_ms() + DEFAULT_DURATION_MS
    return [
        await create_auction(session, redis, queue, title, price, end_time)
        for title, price in SEED_AUCTIONS
    ]
