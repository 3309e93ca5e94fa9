"""
Notification Gateway — 分類・配信・時計ブロードキャスト

バスから受け取ったメッセージを検証し、
  - 正しいエンベロープ → クライアント向けイベント名に変換して全接続へ配信
  - 不正・未知の type  → デッドレターリストに積んで次へ進む (配信しない)

各レプリカが独立にチャネルを購読し、自分の接続だけに配信する。
バス自体がレプリカ間のブロードキャストなので、どのレプリカで処理された入札でも
全クライアントに 1 回ずつ届く。

時計: 接続直後と 1 秒ごとに同じ serverTime を全接続へ送る。
クライアントは自分の時計ではなくこの値で残り時間を計算する。
"""

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Any

import redis.asyncio as aioredis
from fastapi import WebSocket

from ..clock import iso_now, now_ms
from ..config import (
    CLOCK_TICK_SECONDS,
    DEAD_LETTER_KEY,
    DEAD_LETTER_MAX_LEN,
    DEDUP_WINDOW,
)
from ..events import DeadLetterReason, Envelope, EventType, MalformedEvent, parse_envelope
from .connections import ConnectionManager

logger = logging.getLogger(__name__)

SERVER_TIME_EVENT = "server_time"

CLIENT_EVENTS = {
    EventType.BID_PLACED: "price_update",
    EventType.AUCTION_CREATED: "auction_created",
    EventType.AUCTION_DELETED: "auction_deleted",
    EventType.AUCTION_ENDED: "auction_ended",
}


def to_client_event(envelope: Envelope) -> tuple[str, Any]:
    """エンベロープをクライアント向けの (イベント名, データ) に変換する。"""
    payload = envelope.payload
    name = CLIENT_EVENTS[envelope.type]
    if envelope.type is EventType.AUCTION_CREATED:
        return name, payload["auction"]
    if envelope.type is EventType.AUCTION_DELETED:
        return name, payload["auctionId"]
    return name, payload


async def list_dead_letters(
    redis: aioredis.Redis,
    limit: int = 50,
    *,
    key: str = DEAD_LETTER_KEY,
) -> list[dict]:
    """デッドレターを新しい順に返す (オフライン調査用)。"""
    entries = await redis.lrange(key, 0, max(limit, 1) - 1)
    return [json.loads(entry) for entry in entries]


class NotificationGateway:
    def __init__(
        self,
        redis: aioredis.Redis,
        connections: ConnectionManager,
        *,
        dead_letter_key: str = DEAD_LETTER_KEY,
        dead_letter_max_len: int = DEAD_LETTER_MAX_LEN,
        dedup_window: int = DEDUP_WINDOW,
    ):
        self.redis = redis
        self.connections = connections
        self.dead_letter_key = dead_letter_key
        self.dead_letter_max_len = dead_letter_max_len
        self.dedup_window = dedup_window
        self._seen: OrderedDict[str, None] = OrderedDict()

    async def handle_message(self, raw: str | bytes) -> bool:
        """
        バスからの 1 メッセージを処理する。配信したら True。
        検証に失敗したメッセージは例外を外に出さずデッドレターに回す。
        """
        try:
            envelope = parse_envelope(raw)
        except MalformedEvent as e:
            logger.warning("Dead-lettering message (%s): %s", e.reason.value, e.detail)
            await self.dead_letter(raw, e.reason)
            return False

        if self._already_seen(envelope.event_id):
            logger.debug("Duplicate event %s ignored", envelope.event_id)
            return False

        name, data = to_client_event(envelope)
        sent = await self.connections.broadcast_all(name, data)
        logger.info("Broadcast %s (%s) to %d clients", name, envelope.event_id, sent)
        return True

    async def dead_letter(self, raw: str | bytes, reason: DeadLetterReason) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        entry = json.dumps({"reason": reason.value, "raw": raw, "at": iso_now()})
        async with self.redis.pipeline(transaction=True) as pipe:
            await (
                pipe.lpush(self.dead_letter_key, entry)
                .ltrim(self.dead_letter_key, 0, self.dead_letter_max_len - 1)
                .execute()
            )

    def _already_seen(self, event_id: str) -> bool:
        """直近 dedup_window 件の eventId を覚えておき、再配信を捨てる。"""
        if event_id in self._seen:
            self._seen.move_to_end(event_id)
            return True
        self._seen[event_id] = None
        if len(self._seen) > self.dedup_window:
            self._seen.popitem(last=False)
        return False

    # ── 共有時計 ─────────────────────────────────────

    async def send_time(self, websocket: WebSocket) -> int:
        """新しい接続に現在のサーバー時刻を送る。"""
        server_time = now_ms()
        await self.connections.send_to(
            websocket, SERVER_TIME_EVENT, {"serverTime": server_time}
        )
        return server_time

    async def broadcast_time(self) -> int:
        """1 tick 分。時刻は 1 回だけ取得して全接続に同じ値を送る。"""
        server_time = now_ms()
        await self.connections.broadcast_all(
            SERVER_TIME_EVENT, {"serverTime": server_time}
        )
        return server_time

    async def run_clock(
        self,
        shutdown_event: asyncio.Event,
        interval: float = CLOCK_TICK_SECONDS,
    ) -> None:
        while not shutdown_event.is_set():
            try:
                await self.broadcast_time()
            except Exception:
                logger.exception("Clock broadcast failed")
            await asyncio.sleep(interval)
