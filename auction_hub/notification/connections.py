"""
Notification Gateway — WebSocket 接続管理

このレプリカに接続しているクライアントだけを保持する。
フレームは {"event": 名前, "data": ペイロード} の JSON テキスト。
"""

import json
import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


class ConnectionManager:
    def __init__(self) -> None:
        self.active_connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info("WebSocket connected. Total connections: %d", len(self.active_connections))

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(
                "WebSocket disconnected. Total connections: %d",
                len(self.active_connections),
            )

    async def send_to(self, websocket: WebSocket, event: str, data: Any) -> None:
        await websocket.send_text(encode_frame(event, data))

    async def broadcast_all(self, event: str, data: Any) -> int:
        """
        全接続に同じフレームを送る。フレームは 1 回だけシリアライズする。
        送信に失敗した接続は切断扱いにする。送信できた件数を返す。
        """
        frame = encode_frame(event, data)
        sent = 0
        disconnected = []
        for connection in list(self.active_connections):
            try:
                await connection.send_text(frame)
                sent += 1
            except Exception as e:
                logger.warning("Error sending to WebSocket: %s", e)
                disconnected.append(connection)

        for connection in disconnected:
            self.disconnect(connection)
        return sent
