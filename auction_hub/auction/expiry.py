"""
Auction Service — 期限切れスケジューラ

すべての開催中オークションが endTime 以降に必ず 1 回だけ終了するよう保証する。

  schedule_expiry    作成時: auctionId をキーに遅延タスクを登録
  on_startup         起動時: 開催中かつ未来のものを再登録 (キュー消失に備える)
  reconcile_expired  起動時・定期: 期限を過ぎたのに開催中のものを直接終了
  execute_expiry     タスク実行時: is_active=TRUE のときだけ FALSE にする

終了の遷移は条件付き UPDATE 1 回で行う。実際にフラグを倒した呼び出しだけが
AUCTION_ENDED を発行するので、タスクの再試行や照合との競合があっても
イベントは 1 回しか出ない。
"""

import logging

import redis.asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .. import events
from ..clock import now_ms
from ..events import Envelope, EventType
from ..task_queue import DelayedTaskQueue, Handler
from . import queries

logger = logging.getLogger(__name__)


async def schedule_expiry(queue: DelayedTaskQueue, auction: dict) -> bool:
    """
    期限切れタスクを登録する。終了時刻を過ぎていれば何もしない
    (そのオークションは reconcile_expired が処理する)。
    """
    delay = auction["endTime"] - now_ms()
    if delay <= 0:
        return False
    await queue.enqueue(auction["id"], {"auctionId": auction["id"]}, delay)
    return True


async def on_startup(session: AsyncSession, queue: DelayedTaskQueue) -> int:
    """開催中で終了時刻が未来のオークションを再スケジュールする。"""
    auctions = await queries.find_auctions(session, active=True, ending_after=now_ms())
    scheduled = 0
    for auction in auctions:
        if await schedule_expiry(queue, auction):
            scheduled += 1
    logger.info("Rescheduled expiry for %d active auctions", scheduled)
    return scheduled


async def end_auction(
    session: AsyncSession,
    redis: aioredis.Redis,
    auction_id: str,
) -> Envelope | None:
    """
    終了の遷移 (is_active: TRUE → FALSE)。

    既に終了済み・削除済みなら 0 行で None を返す。
    フラグを倒したときだけ AUCTION_ENDED を発行する。
    """
    result = await session.execute(
        text("""
            UPDATE auctions
            SET is_active = FALSE
            WHERE id = :id AND is_active = TRUE
            RETURNING id, highest_bidder, current_price
        """),
        {"id": auction_id},
    )
    row = result.fetchone()
    if row is None:
        await session.rollback()
        return None
    await session.commit()

    logger.info(
        "Auction %s ended: winner=%s final_price=%s",
        auction_id, row.highest_bidder, row.current_price,
    )
    return await events.publish_event(
        redis,
        EventType.AUCTION_ENDED,
        {
            "auctionId": row.id,
            "winner": row.highest_bidder,
            "finalPrice": float(row.current_price),
        },
    )


async def execute_expiry(
    session: AsyncSession,
    redis: aioredis.Redis,
    auction_id: str,
) -> Envelope | None:
    """タスクハンドラ本体。何度実行しても安全 (冪等)。"""
    envelope = await end_auction(session, redis, auction_id)
    if envelope is None:
        logger.debug("Expiry for %s was a no-op (already ended or deleted)", auction_id)
    return envelope


async def reconcile_expired(
    session: AsyncSession,
    redis: aioredis.Redis,
) -> list[str]:
    """
    期限を過ぎても開催中のままのオークションをその場で終了させる。
    タスクの取りこぼしやリトライ上限超過のバックストップ。
    """
    expired = await queries.find_auctions(session, active=True, ended_by=now_ms())
    ended = []
    for auction in expired:
        if await end_auction(session, redis, auction["id"]) is not None:
            ended.append(auction["id"])
    if ended:
        logger.info("Reconciled %d expired auctions", len(ended))
    return ended


def expiry_handler(
    session_factory: sessionmaker,
    redis: aioredis.Redis,
) -> Handler:
    """キューに登録するハンドラ。例外はキューの再試行ポリシーに任せる。"""

    async def handle(payload: dict) -> None:
        async with session_factory() as session:
            await execute_expiry(session, redis, payload["auctionId"])

    return handle
