"""
ストア接続とテーブル定義

SQLAlchemy asyncio 拡張の上で生 SQL (text) を実行する。
本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite) で同じ SQL を使うため、
時刻はすべてエポックミリ秒の BIGINT で保持する。

  auctions         オークション本体 (version による楽観的ロック)
  auction_bidders  入札者の集合 (auction_id, bidder) の複合主キーで重複なし
  bids             入札の監査ログ (追記のみ・削除しない)
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

DDL = [
    """
    CREATE TABLE IF NOT EXISTS auctions (
        id             VARCHAR(36) PRIMARY KEY,
        title          TEXT NOT NULL,
        start_price    DOUBLE PRECISION NOT NULL,
        current_price  DOUBLE PRECISION NOT NULL,
        highest_bidder TEXT,
        end_time       BIGINT NOT NULL,
        is_active      BOOLEAN NOT NULL DEFAULT TRUE,
        version        INTEGER NOT NULL DEFAULT 0,
        created_at     BIGINT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_auctions_active_end_time
        ON auctions (is_active, end_time)
    """,
    """
    CREATE TABLE IF NOT EXISTS auction_bidders (
        auction_id VARCHAR(36) NOT NULL,
        bidder     TEXT NOT NULL,
        PRIMARY KEY (auction_id, bidder)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bids (
        id         VARCHAR(36) PRIMARY KEY,
        auction_id VARCHAR(36) NOT NULL,
        bidder     TEXT NOT NULL,
        amount     DOUBLE PRECISION NOT NULL,
        placed_at  BIGINT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_bids_auction_id ON bids (auction_id)
    """,
]


def make_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, factory


async def create_all(engine: AsyncEngine) -> None:
    """テーブルが無ければ作成する (マイグレーションは扱わない)。"""
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
