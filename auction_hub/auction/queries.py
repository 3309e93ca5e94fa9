"""
Auction Service — クエリハンドラ (読み取り側)

auctions テーブルと入札者集合を結合して、API とイベントで使う
camelCase の辞書 (オークションのスナップショット) を返す。
"""

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

AUCTION_COLUMNS = """
    id, title, start_price, current_price, highest_bidder,
    end_time, is_active, version, created_at
"""


def auction_from_row(row, bidders: list[str]) -> dict:
    return {
        "id": row.id,
        "title": row.title,
        "startPrice": float(row.start_price),
        "currentPrice": float(row.current_price),
        "highestBidder": row.highest_bidder,
        "bidders": bidders,
        "endTime": int(row.end_time),
        "isActive": bool(row.is_active),
        "version": int(row.version),
        "createdAt": int(row.created_at),
    }


async def bidders_for(session: AsyncSession, auction_ids: list[str]) -> dict[str, list[str]]:
    """オークション ID ごとの入札者一覧 (順序なしの集合をソートして返す)"""
    if not auction_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT auction_id, bidder FROM auction_bidders
            WHERE auction_id IN :ids
            ORDER BY bidder
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": auction_ids},
    )
    bidders: dict[str, list[str]] = {auction_id: [] for auction_id in auction_ids}
    for row in result.fetchall():
        bidders[row.auction_id].append(row.bidder)
    return bidders


async def get_auction(session: AsyncSession, auction_id: str) -> dict | None:
    result = await session.execute(
        text(f"SELECT {AUCTION_COLUMNS} FROM auctions WHERE id = :id"),
        {"id": auction_id},
    )
    row = result.fetchone()
    if not row:
        return None
    bidders = await bidders_for(session, [row.id])
    return auction_from_row(row, bidders[row.id])


async def find_auctions(
    session: AsyncSession,
    *,
    active: bool | None = None,
    ending_after: int | None = None,
    ended_by: int | None = None,
) -> list[dict]:
    """
    条件に合うオークションを新しい順に返す。

    ending_after: end_time >  指定時刻 (ms)
    ended_by:     end_time <= 指定時刻 (ms)
    """
    clauses = []
    params: dict = {}
    if active is not None:
        clauses.append("is_active = :active")
        params["active"] = active
    if ending_after is not None:
        clauses.append("end_time > :ending_after")
        params["ending_after"] = ending_after
    if ended_by is not None:
        clauses.append("end_time <= :ended_by")
        params["ended_by"] = ended_by
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    result = await session.execute(
        text(f"SELECT {AUCTION_COLUMNS} FROM auctions {where} ORDER BY created_at DESC"),
        params,
    )
    rows = result.fetchall()
    bidders = await bidders_for(session, [row.id for row in rows])
    return [auction_from_row(row, bidders[row.id]) for row in rows]


async def list_active_auctions(session: AsyncSession) -> list[dict]:
    return await find_auctions(session, active=True)


async def count_auctions(session: AsyncSession) -> int:
    result = await session.execute(text("SELECT COUNT(*) AS n FROM auctions"))
    return int(result.scalar_one())


async def list_bids(session: AsyncSession, auction_id: str) -> list[dict]:
    """入札履歴 (監査ログ) を新しい順に返す。"""
    result = await session.execute(
        text("""
            SELECT id, auction_id, bidder, amount, placed_at
            FROM bids
            WHERE auction_id = :auction_id
            ORDER BY placed_at DESC, amount DESC
        """),
        {"auction_id": auction_id},
    )
    return [
        {
            "id": row.id,
            "auctionId": row.auction_id,
            "bidder": row.bidder,
            "amount": float(row.amount),
            "placedAt": int(row.placed_at),
        }
        for row in result.fetchall()
    ]
