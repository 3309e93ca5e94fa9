"""
エラー分類

ドメイン関数はこれらの例外を送出するだけで、HTTP ステータスは知らない。
ステータスへの変換は API 層 (auction.main) の例外ハンドラが行う。

  InvalidInput          入力そのものが不正 (ストアに触れる前に拒否)
  NotFound              対象が存在しない
  BusinessRuleViolation 終了済み・期限切れ・最低入札額未満など
  Conflict              楽観的ロックの述語が不一致 → 再読み込みして再試行
  TransportFailure      ストア/バスに到達できない (コミットされたとみなさない)
"""


class AuctionError(Exception):
    """ユーザー向けメッセージを持つ基底例外"""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(AuctionError):
    pass


class NotFound(AuctionError):
    pass


class BusinessRuleViolation(AuctionError):
    pass


class Conflict(AuctionError):
    pass


class TransportFailure(AuctionError):
    pass
