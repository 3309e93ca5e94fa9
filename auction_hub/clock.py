"""時刻ヘルパー。ストアと時計ブロードキャストはエポックミリ秒で統一する。"""

from datetime import datetime, timezone


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()
