"""
レディネス状態

  not_ready ──(起動時の照合・再スケジュール完了)──▶ ready
  ready     ──(シャットダウン開始)──────────────▶ not_ready

/readyz はこの状態だけを見る。ready になる前のトラフィックは受け付けない。
"""

import logging
from enum import Enum

logger = logging.getLogger(__name__)


class Readiness(str, Enum):
    NOT_READY = "not_ready"
    READY = "ready"


class ReadinessState:
    def __init__(self) -> None:
        self._status = Readiness.NOT_READY
        self._reason = "starting"

    @property
    def status(self) -> Readiness:
        return self._status

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def is_ready(self) -> bool:
        return self._status is Readiness.READY

    def mark_ready(self) -> None:
        self._status = Readiness.READY
        self._reason = ""
        logger.info("Service is ready")

    def mark_not_ready(self, reason: str) -> None:
        self._status = Readiness.NOT_READY
        self._reason = reason
        logger.info("Service is not ready: %s", reason)

    def as_dict(self) -> dict:
        body = {"status": self._status.value}
        if self._reason:
            body["reason"] = self._reason
        return body
