"""
Owner 判定

依序檢查三條規則，第一條符合的就授予 owner：
1. ExplicitClaim：加入請求本身宣告是 owner（例如建立房間後跳轉帶的 owner flag）
2. IdentityMatch：永久識別（email / account id）等於房間記錄的 owner_identity
3. NameMatch：顯示名稱等於房間記錄的 owner 名稱

只在 join 時判定一次並快取在 session 上。
這是方便性的信任，不是安全邊界：多個裝置可以同時是 owner，
任何能直接存取儲存層的 client 都能繞過。
"""
from typing import Optional, Sequence

from pydantic import BaseModel

from schemas import RoomSnapshot


class JoinRequest(BaseModel):
    name: str
    identity: Optional[str] = None
    is_owner_claim: bool = False


class OwnershipRule:
    name = "rule"

    def matches(self, room: RoomSnapshot, request: JoinRequest) -> bool:
        raise NotImplementedError


class ExplicitClaim(OwnershipRule):
    name = "explicit_claim"

    def matches(self, room, request):
        return request.is_owner_claim


class IdentityMatch(OwnershipRule):
    name = "identity_match"

    def matches(self, room, request):
        if not room.owner_identity or not request.identity:
            return False
        return room.owner_identity.strip().lower() == request.identity.strip().lower()


class NameMatch(OwnershipRule):
    name = "name_match"

    def matches(self, room, request):
        return bool(room.owner_name) and room.owner_name == request.name


DEFAULT_RULES = (ExplicitClaim(), IdentityMatch(), NameMatch())


def resolve_ownership(
    room: RoomSnapshot,
    request: JoinRequest,
    rules: Sequence[OwnershipRule] = DEFAULT_RULES,
) -> Optional[str]:
    """
    返回：
        授予 owner 的規則名稱；都不符合時回傳 None
    """
    for rule in rules:
        if rule.matches(room, request):
            return rule.name
    return None
