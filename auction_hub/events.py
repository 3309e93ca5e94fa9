"""
イベントエンベロープ — バス上の契約

すべてのドメインイベントはエンベロープに包まれて Redis Pub/Sub を流れる。

  {
    "eventId":    "uuid4",        ← 発行ごとに一意 (コンシューマ側の重複排除に使う)
    "type":       "BID_PLACED",   ← 閉じた集合 (EventType)
    "occurredAt": "ISO-8601 UTC",
    "traceId":    "… | null",
    "payload":    { … }           ← type ごとのスキーマ
  }

発行側は eventId と occurredAt を付与し、ペイロードを検証してから送る。
受信側 (parse_envelope) は検証に失敗したメッセージを例外で知らせ、
呼び出し側がデッドレターに回す。
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .config import EVENT_CHANNEL


class EventType(str, Enum):
    BID_PLACED = "BID_PLACED"
    AUCTION_CREATED = "AUCTION_CREATED"
    AUCTION_DELETED = "AUCTION_DELETED"
    AUCTION_ENDED = "AUCTION_ENDED"


class DeadLetterReason(str, Enum):
    PARSE_ERROR = "parse_error"
    SCHEMA_INVALID = "schema_invalid"
    UNKNOWN_TYPE = "unknown_type"


class _WireModel(BaseModel):
    """ワイヤ上は camelCase、Python 側は snake_case"""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


# ── ペイロード定義 ───────────────────────────────


class BidPlaced(_WireModel):
    """入札が受理された"""
    auction_id: str
    amount: float
    bidder: str
    bidders: list[str]
    version: int


class AuctionCreated(_WireModel):
    """オークションが作成された (スナップショット全体)"""
    auction: dict[str, Any]


class AuctionDeleted(_WireModel):
    """オークションが削除された"""
    auction_id: str


class AuctionEnded(_WireModel):
    """オークションが終了した"""
    auction_id: str
    winner: str | None = None
    final_price: float


_KNOWN_TYPES = {t.value for t in EventType}

PAYLOAD_MODELS: dict[EventType, type[_WireModel]] = {
    EventType.BID_PLACED: BidPlaced,
    EventType.AUCTION_CREATED: AuctionCreated,
    EventType.AUCTION_DELETED: AuctionDeleted,
    EventType.AUCTION_ENDED: AuctionEnded,
}


class Envelope(_WireModel):
    event_id: str
    type: EventType
    occurred_at: datetime
    trace_id: str | None = None
    payload: dict[str, Any]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# ── 受信側の検証エラー ───────────────────────────


class MalformedEvent(Exception):
    """エンベロープとして解釈できないメッセージ"""

    def __init__(self, reason: DeadLetterReason, detail: str) -> None:
        super().__init__(f"{reason.value}: {detail}")
        self.reason = reason
        self.detail = detail


class UnknownEventType(MalformedEvent):
    """形式は正しいが未知の type (新しいプロデューサが先にデプロイされた場合など)"""

    def __init__(self, event_type: str) -> None:
        super().__init__(DeadLetterReason.UNKNOWN_TYPE, event_type)
        self.event_type = event_type


# ── 発行 ─────────────────────────────────────────


def build_envelope(
    event_type: EventType,
    payload: dict[str, Any],
    trace_id: str | None = None,
) -> Envelope:
    """
    ペイロードを検証してエンベロープを組み立てる。
    不完全なペイロードはここで ValidationError になり、発行されない。
    """
    model = PAYLOAD_MODELS[event_type].model_validate(payload)
    return Envelope(
        event_id=str(uuid4()),
        type=event_type,
        occurred_at=datetime.now(timezone.utc),
        trace_id=trace_id,
        payload=model.model_dump(by_alias=True),
    )


async def publish_event(
    redis: aioredis.Redis,
    event_type: EventType,
    payload: dict[str, Any],
    trace_id: str | None = None,
    *,
    channel: str = EVENT_CHANNEL,
) -> Envelope:
    """エンベロープを組み立ててチャネルに発行する。発行したエンベロープを返す。"""
    envelope = build_envelope(event_type, payload, trace_id)
    await redis.publish(channel, envelope.to_json())
    return envelope


# ── 受信 ─────────────────────────────────────────


def parse_envelope(raw: str | bytes) -> Envelope:
    """
    受信メッセージを検証済みエンベロープに変換する。

    判定順:
      1. JSON として読めない                    → parse_error
      2. オブジェクトでない / type が文字列でない → schema_invalid
      3. type が閉じた集合の外                  → unknown_type
      4. エンベロープかペイロードの形が不正      → schema_invalid
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise MalformedEvent(DeadLetterReason.PARSE_ERROR, str(e)) from e

    if not isinstance(data, dict):
        raise MalformedEvent(DeadLetterReason.SCHEMA_INVALID, "envelope is not an object")

    event_type = data.get("type")
    if not isinstance(event_type, str):
        raise MalformedEvent(DeadLetterReason.SCHEMA_INVALID, "missing type")
    if event_type not in _KNOWN_TYPES:
        raise UnknownEventType(event_type)

    try:
        envelope = Envelope.model_validate(data)
        payload = PAYLOAD_MODELS[envelope.type].model_validate(envelope.payload)
    except ValidationError as e:
        raise MalformedEvent(DeadLetterReason.SCHEMA_INVALID, str(e)) from e

    return envelope.model_copy(update={"payload": payload.model_dump(by_alias=True)})
