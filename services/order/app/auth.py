"""
Order Service — 認証ゲートウェイとの境界

トークンの検証は上流の API ゲートウェイが行い、検証済みのユーザー ID と
ロールをヘッダーで渡してくる。このサービスはその値を信頼し、再検証はしない。

    X-User-Id:   正の整数
    X-User-Role: user | admin   (省略時は user)
"""

from dataclasses import dataclass

from fastapi import Depends, Header

from .errors import AuthenticationError, AuthorizationError, ValidationError
from .validation import parse_id

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    if x_user_id is None:
        raise AuthenticationError("Missing or invalid user identity")
    try:
        user_id = parse_id(x_user_id, "X-User-Id")
    except ValidationError:
        raise AuthenticationError("Missing or invalid user identity") from None
    role = (x_user_role or ROLE_USER).strip().lower()
    if role not in (ROLE_USER, ROLE_ADMIN):
        raise AuthenticationError("Unknown user role")
    return Principal(user_id=user_id, role=role)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise AuthorizationError("Administrator access required")
    return principal
