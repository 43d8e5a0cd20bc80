"""
Storefront — 呼び出し元ユーザー (AuthContext)

認証はこのサービスの外（API ゲートウェイ）で済んでいる前提。
ゲートウェイが付与したヘッダーをそのまま信頼してユーザーを組み立てる。
"""

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel


class CurrentUser(BaseModel):
    id: str
    username: str = ""
    email: str = ""
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_email: str = Header(default=""),
    x_user_name: str = Header(default=""),
    x_user_role: str = Header(default="customer"),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(401, "User not authenticated")
    return CurrentUser(
        id=x_user_id,
        username=x_user_name,
        email=x_user_email,
        role=x_user_role,
    )


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(403, "Admin access required")
    return user
