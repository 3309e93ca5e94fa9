"""
Expiry Worker — 遅延タスクのコンシューマ

起動時に期限切れを照合してから、auction-expiry キューを処理する。
照合は一定間隔でも繰り返す (リトライ上限を超えて破棄されたジョブの救済)。

  起動 ─▶ reconcile_expired ─▶ ┬─ queue.run        (期限切れタスクの実行)
                               └─ reconcile_loop   (定期照合)
"""

import asyncio
import logging
import signal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker

from ..auction import expiry
from ..config import (
    DATABASE_URL,
    EXPIRY_QUEUE_NAME,
    RECONCILE_INTERVAL_SECONDS,
    REDIS_URL,
    configure_logging,
)
from ..database import create_all, make_session_factory
from ..task_queue import DelayedTaskQueue

logger = logging.getLogger(__name__)


async def reconcile_loop(
    session_factory: sessionmaker,
    redis: aioredis.Redis,
    shutdown_event: asyncio.Event,
    interval: float = RECONCILE_INTERVAL_SECONDS,
) -> None:
    """interval 秒ごとに期限切れを照合する。"""
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        if shutdown_event.is_set():
            break
        try:
            async with session_factory() as session:
                await expiry.reconcile_expired(session, redis)
        except (RedisError, DBAPIError, OSError):
            logger.exception("Periodic reconciliation failed")


async def run_worker(shutdown_event: asyncio.Event) -> None:
    engine, async_session = make_session_factory(DATABASE_URL)
    redis = aioredis.from_url(REDIS_URL, decode_responses=True)
    queue = DelayedTaskQueue(redis, EXPIRY_QUEUE_NAME)

    try:
        await create_all(engine)
        async with async_session() as session:
            await expiry.reconcile_expired(session, redis)

        queue.register_handler(expiry.expiry_handler(async_session, redis))
        tasks = [
            asyncio.create_task(queue.run(shutdown_event)),
            asyncio.create_task(reconcile_loop(async_session, redis, shutdown_event)),
        ]
        logger.info("Auction expiry worker started")

        await shutdown_event.wait()
        logger.info("Shutting down worker...")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        await redis.aclose()
        await engine.dispose()


async def _main() -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)
    await run_worker(shutdown_event)


def main() -> None:
    configure_logging()
    asyncio.run(_main())


if __name__ == "__main__":
    main()
