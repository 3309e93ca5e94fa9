"""
Auction Service — FastAPI エントリーポイント

入札・作成・削除を受け付け、コマンドハンドラと期限切れスケジューラに委譲する。
起動時に「期限切れの照合 → 開催中オークションの再スケジュール」を終えてから
ready になる。

  ┌────────┐ POST /bid ┌──────────────┐ 条件付き UPDATE ┌──────────┐
  │ Client │ ────────▶ │ Auction API  │ ──────────────▶ │  Store   │
  └────────┘           └──────┬───────┘                 └──────────┘
                              │ publish (auction.events.v1)
                              ▼
                        Redis Pub/Sub ──▶ Notification Gateway
"""

from contextlib import asynccontextmanager
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from redis.exceptions import RedisError
from sqlalchemy.exc import DBAPIError

from ..clock import now_ms, to_ms
from ..config import DATABASE_URL, EXPIRY_QUEUE_NAME, REDIS_URL, configure_logging
from ..database import create_all, make_session_factory
from ..errors import (
    AuctionError,
    BusinessRuleViolation,
    Conflict,
    InvalidInput,
    NotFound,
    TransportFailure,
)
from ..readiness import ReadinessState
from ..task_queue import DelayedTaskQueue
from . import commands, expiry, queries
from .auth import Caller, require_admin, require_bidder

engine, async_session = make_session_factory(DATABASE_URL)
redis_pool: aioredis.Redis | None = None
expiry_queue: DelayedTaskQueue | None = None
readiness = ReadinessState()


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool, expiry_queue
    configure_logging()
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    expiry_queue = DelayedTaskQueue(redis_pool, EXPIRY_QUEUE_NAME)

    await create_all(engine)
    async with async_session() as session:
        await expiry.reconcile_expired(session, redis_pool)
        await expiry.on_startup(session, expiry_queue)
    readiness.mark_ready()

    yield

    readiness.mark_not_ready("shutting down")
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Auction Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── エラー変換 ───────────────────────────────────

ERROR_STATUS = {
    InvalidInput: 400,
    NotFound: 404,
    BusinessRuleViolation: 400,
    Conflict: 409,
    TransportFailure: 503,
}


@app.exception_handler(AuctionError)
async def auction_error_handler(_request: Request, exc: AuctionError):
    status = ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status, content={"error": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "detail": jsonable_errors(exc)},
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
        for err in exc.errors()
    ]


@asynccontextmanager
async def unit_of_work():
    """
    リクエスト 1 件分のセッション。
    ストア・バスに届かないときは TransportFailure (503) にする。
    """
    try:
        async with async_session() as session:
            yield session
    except (RedisError, DBAPIError, OSError) as e:
        raise TransportFailure("Store or event bus unavailable") from e


# ── Request Models ───────────────────────────────


class _CamelRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BidRequest(_CamelRequest):
    amount: float
    expected_version: int | None = Field(None, ge=0)


class CreateAuctionRequest(_CamelRequest):
    title: str = Field(min_length=1)
    start_price: float = Field(0, ge=0, allow_inf_nan=False)
    end_time: datetime | None = None


# ── Command Endpoints ────────────────────────────


@app.post("/auctions/{auction_id}/bid")
async def cmd_place_bid(
    auction_id: str,
    req: BidRequest,
    caller: Caller = Depends(require_bidder),
    x_trace_id: str | None = Header(None),
):
    """入札コマンド。200 / 400 / 404 / 409"""
    async with unit_of_work() as session:
        return await commands.place_bid(
            session, redis_pool,
            auction_id, caller.username, req.amount,
            req.expected_version, x_trace_id,
        )


@app.post("/auctions")
async def cmd_create_auction(
    req: CreateAuctionRequest,
    _admin: Caller = Depends(require_admin),
    x_trace_id: str | None = Header(None),
):
    """オークション作成コマンド (管理者のみ)"""
    end_time = to_ms(req.end_time) if req.end_time else None
    async with unit_of_work() as session:
        return await commands.create_auction(
            session, redis_pool, expiry_queue,
            req.title, req.start_price, end_time, x_trace_id,
        )


@app.delete("/auctions/{auction_id}")
async def cmd_delete_auction(
    auction_id: str,
    _admin: Caller = Depends(require_admin),
    x_trace_id: str | None = Header(None),
):
    """オークション削除コマンド (管理者のみ)"""
    async with unit_of_work() as session:
        await commands.delete_auction(session, redis_pool, auction_id, x_trace_id)
    return {"message": "Auction deleted", "auctionId": auction_id}


@app.post("/seed")
async def cmd_seed(_admin: Caller = Depends(require_admin)):
    """デモ用データの投入 (ストアが空のときだけ)"""
    async with unit_of_work() as session:
        created = await commands.seed_auctions(session, redis_pool, expiry_queue)
    if not created:
        return {"message": "Data already exists", "created": 0}
    return {"message": "Seed data added", "created": len(created)}


# ── Query Endpoints ──────────────────────────────


@app.get("/auctions")
async def query_list_auctions():
    """開催中のオークション一覧 (新しい順)"""
    async with unit_of_work() as session:
        return await queries.list_active_auctions(session)


@app.get("/auctions/{auction_id}")
async def query_get_auction(auction_id: str):
    async with unit_of_work() as session:
        auction = await queries.get_auction(session, auction_id)
    if not auction:
        raise NotFound("Auction not found")
    return auction


@app.get("/auctions/{auction_id}/bids")
async def query_list_bids(auction_id: str):
    """入札履歴 (新しい順)"""
    async with unit_of_work() as session:
        if not await queries.get_auction(session, auction_id):
            raise NotFound("Auction not found")
        return await queries.list_bids(session, auction_id)


@app.get("/time")
async def server_time():
    """クライアントの残り時間計算に使うサーバー時刻 (ms)"""
    return {"serverTime": now_ms()}


@app.get("/healthz")
async def healthz():
    return {"status": "ok", "service": "auction-service"}


@app.get("/readyz")
async def readyz():
    status = 200 if readiness.is_ready else 503
    return JSONResponse(status_code=status, content=readiness.as_dict())
