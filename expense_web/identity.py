"""
身份与角色解析。

登录时把可信的身份声明（principal）写入会话，之后每个请求只从会话
解析身份，不再重复查询角色表；权限变化或登出时显式刷新/清除。
"""

import enum
from dataclasses import dataclass, field
from typing import MutableMapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import ROLE_ADMIN, User, is_superadmin_name

PRINCIPAL_KEY = "principal"
USER_ID_KEY = "user_id"


class Tier(enum.Enum):
    ANONYMOUS = "anonymous"
    USER = "user"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


@dataclass(frozen=True)
class Identity:
    user_id: Optional[int] = None
    username: Optional[str] = None
    roles: frozenset = field(default_factory=frozenset)
    is_admin: bool = False
    is_superadmin: bool = False
    session_version: Optional[int] = None

    @classmethod
    def anonymous(cls) -> "Identity":
        return cls()

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None or self.is_superadmin

    @property
    def tier(self) -> Tier:
        if self.is_superadmin:
            return Tier.SUPERADMIN
        if self.is_admin:
            return Tier.ADMIN
        if self.user_id is not None:
            return Tier.USER
        return Tier.ANONYMOUS


def principal_for(user: User) -> dict:
    """根据数据库中的用户及其角色生成会话中保存的身份声明。"""
    return {
        "sub": user.id,
        "name": user.username,
        "roles": list(user.role_names),
        "ver": user.session_version or 1,
    }


def sign_in(session: MutableMapping, user: User) -> Identity:
    session.clear()
    session[PRINCIPAL_KEY] = principal_for(user)
    session[USER_ID_KEY] = user.id
    return resolve(session)


def sign_out(session: MutableMapping) -> None:
    session.clear()


def refresh_principal(session: MutableMapping, user: User) -> None:
    """当前登录用户的角色发生变化后重新签发身份声明。"""
    if _parse_int((session.get(PRINCIPAL_KEY) or {}).get("sub")) != user.id:
        return
    session[PRINCIPAL_KEY] = principal_for(user)
    session[USER_ID_KEY] = user.id


def _parse_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def resolve(session: MutableMapping) -> Identity:
    """
    从会话解析当前请求的身份。

    user_id 优先读会话缓存；缓存缺失时从身份声明推导并回写缓存。
    任何缺失或格式错误的声明都视为匿名，不抛异常。
    """
    principal = session.get(PRINCIPAL_KEY)
    if not isinstance(principal, dict):
        return Identity.anonymous()

    name = principal.get("name")
    raw_roles = principal.get("roles") or []
    if not isinstance(raw_roles, (list, tuple)):
        raw_roles = []
    roles = frozenset(str(r) for r in raw_roles if r)

    user_id = _parse_int(session.get(USER_ID_KEY))
    if user_id is None:
        user_id = _parse_int(principal.get("sub"))
        if user_id is not None:
            session[USER_ID_KEY] = user_id

    return Identity(
        user_id=user_id,
        username=name if isinstance(name, str) else None,
        roles=roles,
        is_admin=ROLE_ADMIN in roles,
        is_superadmin=is_superadmin_name(name),
        session_version=_parse_int(principal.get("ver")),
    )


def is_current(db: Session, ident: Identity) -> bool:
    """
    确认身份声明仍对应同一个账号：用户存在、用户名一致且会话版本未被吊销。

    只查询 users 表的一行，角色仍以登录时写入的声明为准。
    """
    if ident.user_id is None:
        return False
    row = db.execute(
        select(User.username, User.session_version).where(User.id == ident.user_id)
    ).first()
    if row is None:
        return False
    username, version = row
    return username == ident.username and version == ident.session_version
