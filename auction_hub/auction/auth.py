"""
Auction Service — 呼び出し元の識別

認証そのもの (トークン発行・検証) は上流のゲートウェイが行い、
検証済みのユーザー名とロールを X-User / X-Role ヘッダで渡してくる前提。
ここでは「匿名・入札者・管理者」の区別だけを扱う。
"""

from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, Header, HTTPException


class Role(str, Enum):
    ANONYMOUS = "anonymous"
    BIDDER = "bidder"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    username: str | None
    role: Role


def get_caller(
    x_user: str | None = Header(None),
    x_role: str | None = Header(None),
) -> Caller:
    if not x_user:
        return Caller(None, Role.ANONYMOUS)
    role = Role.ADMIN if (x_role or "").lower() == Role.ADMIN.value else Role.BIDDER
    return Caller(x_user, role)


def require_bidder(caller: Caller = Depends(get_caller)) -> Caller:
    """入札者または管理者"""
    if caller.role is Role.ANONYMOUS:
        raise HTTPException(401, "Authentication required")
    return caller


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.role is Role.ANONYMOUS:
        raise HTTPException(401, "Authentication required")
    if caller.role is not Role.ADMIN:
        raise HTTPException(403, "Admin access only")
    return caller
