"""
遅延タスクキュー — Redis 上のキー付きタスクテーブル

「時刻 T にこのジョブを実行する」を Redis に永続化する。
インメモリのタイマーは使わないので、プロセスが再起動してもジョブは残る。

  {name}:delayed  ZSET  member=ジョブキー, score=実行時刻(ms)
  {name}:jobs     HASH  ジョブキー → {"payload": …, "attempts": n}
  {name}:active   ZSET  取得済みジョブ, score=リース期限(ms)

- 同じキーで enqueue すると実行時刻とペイロードを置き換える (重複しない)
- ワーカーは delayed → active の移動に成功したキーだけを実行する (取得者は常に 1 つ)
- 失敗したジョブは指数バックオフで再投入し、上限に達したら破棄する
- リース期限切れのジョブ (ワーカーが落ちた) は recover_stalled で戻す
  → 少なくとも 1 回の実行 (at-least-once)。ハンドラは冪等であること。
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from .clock import now_ms
from .config import (
    TASK_BACKOFF_MS,
    TASK_LEASE_MS,
    TASK_MAX_ATTEMPTS,
    TASK_POLL_INTERVAL,
)

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[None]]

BATCH_SIZE = 100


class DelayedTaskQueue:
    """Redis に永続化される遅延タスクキュー"""

    def __init__(
        self,
        redis: aioredis.Redis,
        name: str,
        *,
        max_attempts: int = TASK_MAX_ATTEMPTS,
        backoff_ms: int = TASK_BACKOFF_MS,
        lease_ms: int = TASK_LEASE_MS,
        poll_interval: float = TASK_POLL_INTERVAL,
        clock: Callable[[], int] = now_ms,
    ):
        self.redis = redis
        self.name = name
        self.max_attempts = max_attempts
        self.backoff_ms = backoff_ms
        self.lease_ms = lease_ms
        self.poll_interval = poll_interval
        self._clock = clock
        self._delayed_key = f"{name}:delayed"
        self._jobs_key = f"{name}:jobs"
        self._active_key = f"{name}:active"
        self._handler: Handler | None = None

    # ── プロデューサ側 ───────────────────────────────

    async def enqueue(
        self, job_key: str, payload: dict[str, Any], delay_ms: int
    ) -> int:
        """
        ジョブを登録し、実行予定時刻(ms)を返す。
        同じ job_key が既にあれば置き換える (冪等キー)。
        """
        fire_at = self._clock() + max(delay_ms, 0)
        job = json.dumps({"payload": payload, "attempts": 0})
        async with self.redis.pipeline(transaction=True) as pipe:
            await (
                pipe.hset(self._jobs_key, job_key, job)
                .zadd(self._delayed_key, {job_key: fire_at})
                .execute()
            )
        logger.debug("Enqueued %s:%s at %d", self.name, job_key, fire_at)
        return fire_at

    async def scheduled_at(self, job_key: str) -> int | None:
        score = await self.redis.zscore(self._delayed_key, job_key)
        return int(score) if score is not None else None

    async def pending_count(self) -> int:
        return await self.redis.zcard(self._delayed_key)

    # ── コンシューマ側 ───────────────────────────────

    def register_handler(self, handler: Handler) -> None:
        self._handler = handler

    async def process_due(self) -> int:
        """実行時刻を過ぎたジョブを 1 巡処理し、処理した件数を返す。"""
        if self._handler is None:
            raise RuntimeError(f"No handler registered for queue {self.name}")

        now = self._clock()
        keys = await self.redis.zrangebyscore(
            self._delayed_key, "-inf", now, start=0, num=BATCH_SIZE
        )
        handled = 0
        for key in keys:
            if not await self.claim(key, now):
                continue
            await self._run(key)
            handled += 1
        return handled

    async def claim(self, key: str, now: int) -> bool:
        """
        delayed から active への移動を 1 トランザクションで行う。
        移動できたワーカーだけが実行する (取得者は常に 1 つ)。
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self._delayed_key)
                if await pipe.zscore(self._delayed_key, key) is None:
                    return False
                pipe.multi()
                pipe.zrem(self._delayed_key, key)
                pipe.zadd(self._active_key, {key: now + self.lease_ms})
                removed, _ = await pipe.execute()
            except WatchError:
                return False
        return bool(removed)

    async def recover_stalled(self) -> int:
        """リース期限切れのジョブを delayed に戻す。"""
        now = self._clock()
        stalled = await self.redis.zrangebyscore(self._active_key, "-inf", now)
        recovered = 0
        for key in stalled:
            if await self.redis.zrem(self._active_key, key):
                await self.redis.zadd(self._delayed_key, {key: now}, nx=True)
                logger.warning("Recovered stalled job %s:%s", self.name, key)
                recovered += 1
        return recovered

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """shutdown_event がセットされるまでポーリングを続ける。"""
        logger.info("Queue %s worker started", self.name)
        while not shutdown_event.is_set():
            try:
                await self.recover_stalled()
                handled = await self.process_due()
            except (RedisError, OSError):
                logger.exception("Queue %s poll failed", self.name)
                handled = 0
            if not handled:
                await asyncio.sleep(self.poll_interval)
        logger.info("Queue %s worker stopped", self.name)

    # ── 内部処理 ─────────────────────────────────────

    async def _run(self, key: str) -> None:
        raw = await self.redis.hget(self._jobs_key, key)
        if raw is None:
            await self.redis.zrem(self._active_key, key)
            return
        job = json.loads(raw)

        try:
            await self._handler(job["payload"])
        except Exception:
            await self._fail(key, job)
        else:
            await self._complete(key)

    async def _complete(self, key: str) -> None:
        await self.redis.zrem(self._active_key, key)
        # 実行中に同じキーで再登録されていればジョブ本体は残す
        if await self.redis.zscore(self._delayed_key, key) is None:
            await self.redis.hdel(self._jobs_key, key)

    async def _fail(self, key: str, job: dict[str, Any]) -> None:
        attempts = job["attempts"] + 1
        if attempts >= self.max_attempts:
            logger.exception(
                "Job %s:%s abandoned after %d attempts", self.name, key, attempts
            )
            async with self.redis.pipeline(transaction=True) as pipe:
                await (
                    pipe.zrem(self._active_key, key)
                    .hdel(self._jobs_key, key)
                    .execute()
                )
            return

        delay = self.backoff_ms * 2 ** (attempts - 1)
        logger.warning(
            "Job %s:%s failed (attempt %d/%d), retrying in %d ms",
            self.name, key, attempts, self.max_attempts, delay,
            exc_info=True,
        )
        job["attempts"] = attempts
        async with self.redis.pipeline(transaction=True) as pipe:
            await (
                pipe.hset(self._jobs_key, key, json.dumps(job))
                .zadd(self._delayed_key, {key: self._clock() + delay})
                .zrem(self._active_key, key)
                .execute()
            )
