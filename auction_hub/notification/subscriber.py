"""
Notification Gateway — Redis Pub/Sub サブスクライバー

auction.events.v1 チャネルを購読し、受信したメッセージを
ゲートウェイ (分類・配信) に渡す。

注意: Redis Pub/Sub は fire-and-forget 方式。
ゲートウェイが落ちている間のイベントは届かない。
クライアントは再接続時に GET /auctions で状態を取り直す。
"""

import asyncio
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..config import EVENT_CHANNEL
from ..readiness import ReadinessState
from .gateway import NotificationGateway

logger = logging.getLogger(__name__)

RECONNECT_DELAY_SECONDS = 1.0


async def run_subscriber(
    redis: aioredis.Redis,
    gateway: NotificationGateway,
    shutdown_event: asyncio.Event,
    readiness: ReadinessState | None = None,
    *,
    channel: str = EVENT_CHANNEL,
) -> None:
    """
    チャネルを購読し、メッセージをゲートウェイに渡す。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("Subscribed to %s channel", channel)
    if readiness is not None:
        readiness.mark_ready()

    try:
        while not shutdown_event.is_set():
            try:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except RedisError:
                # 再接続時に redis-py がチャネルを購読し直す
                logger.exception("Lost connection to %s, retrying", channel)
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)
                continue
            if message and message["type"] == "message":
                try:
                    await gateway.handle_message(message["data"])
                except Exception:
                    logger.exception("Failed to process event")
            else:
                await asyncio.sleep(0.1)
    finally:
        if readiness is not None:
            readiness.mark_not_ready("unsubscribed")
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
