"""
访问范围策略。

所有支出查询（列表、详情、编辑、删除、看板、图表、导出）都通过这里
收窄到调用者可见的子集，范围只从服务端会话中的身份推导。
"""

from dataclasses import dataclass
from typing import Optional

from models import Expense, User, is_superadmin_name

from expense_web.errors import AccessDenied, LoginRequired
from expense_web.identity import Identity


@dataclass(frozen=True)
class ExpenseScope:
    """owner_id 为 None 表示可见全部记录。"""

    owner_id: Optional[int]

    @property
    def is_unrestricted(self) -> bool:
        return self.owner_id is None

    def apply(self, stmt):
        if self.owner_id is None:
            return stmt
        return stmt.where(Expense.user_id == self.owner_id)

    def allows(self, expense: Expense) -> bool:
        return self.owner_id is None or expense.user_id == self.owner_id


def has_full_visibility(identity: Identity, admin_view: bool = True) -> bool:
    """
    统一的层级规则：超级管理员始终可见全部；管理员在管理视图下可见全部。
    admin_view=False 是唯一的例外，用于管理员查看自己的个人数据。
    """
    if identity.is_superadmin:
        return True
    return identity.is_admin and admin_view


def scope_for(identity: Identity, admin_view: bool = True) -> ExpenseScope:
    if has_full_visibility(identity, admin_view):
        return ExpenseScope(owner_id=None)
    if identity.user_id is None:
        # 绝不能退化为不加过滤或按空值过滤的查询
        raise LoginRequired()
    return ExpenseScope(owner_id=identity.user_id)


def scope(stmt, identity: Identity, admin_view: bool = True):
    return scope_for(identity, admin_view).apply(stmt)


def require_login(identity: Identity) -> Identity:
    if not identity.is_authenticated:
        raise LoginRequired()
    return identity


def require_admin(identity: Identity) -> Identity:
    require_login(identity)
    if not (identity.is_admin or identity.is_superadmin):
        raise AccessDenied()
    return identity


def require_superadmin(identity: Identity) -> Identity:
    require_login(identity)
    if not identity.is_superadmin:
        raise AccessDenied("Only the superadmin can perform this action.")
    return identity


def ensure_can_manage(identity: Identity, target: User) -> None:
    """非超级管理员不能修改或删除超级管理员账号。"""
    if is_superadmin_name(target.username) and not identity.is_superadmin:
        raise AccessDenied("Only the superadmin can modify the superadmin account.")
