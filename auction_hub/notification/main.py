"""
Notification Gateway — FastAPI エントリーポイント

WebSocket (/ws) でクライアントを受け付け、バスのイベントと共有時計を配信する。
ステートレスなのでレプリカはいくつでも並べられる。

┌──────────────┐ auction.events.v1 ┌──────────────────┐  /ws  ┌─────────┐
│ Auction API  │ ───── Redis ────▶ │ Gateway (×N)     │ ────▶ │ Clients │
│ Expiry Worker│      Pub/Sub      │ 検証・配信・時計 │       └─────────┘
└──────────────┘                   └────────┬─────────┘
                                            │ 不正なメッセージ
                                   ┌────────▼─────────┐
                                   │ デッドレター      │
                                   │ (Redis List)      │
                                   └──────────────────┘
"""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from ..config import REDIS_URL, configure_logging
from ..readiness import ReadinessState
from .connections import ConnectionManager
from .gateway import NotificationGateway, list_dead_letters
from .subscriber import run_subscriber

connections = ConnectionManager()
readiness = ReadinessState()
redis_pool: aioredis.Redis | None = None
gateway: NotificationGateway | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時にサブスクライバと時計をバックグラウンドタスクとして開始する。"""
    global redis_pool, gateway
    configure_logging()
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    gateway = NotificationGateway(redis_pool, connections)

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(
            run_subscriber(redis_pool, gateway, shutdown_event, readiness)
        ),
        asyncio.create_task(gateway.run_clock(shutdown_event)),
    ]
    yield
    readiness.mark_not_ready("shutting down")
    shutdown_event.set()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await redis_pool.aclose()


app = FastAPI(title="Notification Gateway", lifespan=lifespan)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """接続直後にサーバー時刻を送り、以降はブロードキャストを受け取るだけ。"""
    await connections.connect(websocket)
    try:
        await gateway.send_time(websocket)
        while True:
            # クライアントからのメッセージは使わない (切断検知のためだけに読む)
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        connections.disconnect(websocket)


@app.get("/dead-letters")
async def get_dead_letters(limit: int = Query(50, ge=1, le=1000)):
    """デッドレターを新しい順に返す (調査用)"""
    return await list_dead_letters(redis_pool, limit)


@app.get("/healthz")
async def healthz():
    return {
        "status": "ok",
        "service": "notification-gateway",
        "connections": len(connections.active_connections),
    }


@app.get("/readyz")
async def readyz():
    status = 200 if readiness.is_ready else 503
    return JSONResponse(status_code=status, content=readiness.as_dict())
