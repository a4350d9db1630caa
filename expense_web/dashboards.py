"""看板、首页摘要、图表与超级管理员视图：查询 + 聚合。"""

from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import ROLE_ADMIN, SUPERADMIN_USERNAME, Expense, Menu, Role, User, UserRole

from expense_web import aggregation
from expense_web.aggregation import (
    DashboardView,
    GraphView,
    HomeSummaryView,
    SuperAdminDashboardView,
    SuperAdminExpenseRow,
    SuperAdminUserRow,
)
from expense_web.identity import Identity
from expense_web.policy import has_full_visibility, scope_for
from expense_web.repository import ExpenseRepository


def dashboard(db: Session, identity: Identity, recent_limit: int = 5) -> DashboardView:
    repo = ExpenseRepository(db)
    scoped = repo.list_scoped(scope_for(identity))

    if not has_full_visibility(identity):
        return aggregation.build_dashboard(scoped, n=recent_limit)

    # 管理员视图下 scoped 即全部记录
    owners = repo.owners({e.user_id for e in scoped})
    return aggregation.build_dashboard(
        scoped, scoped, owners, is_admin=True, n=recent_limit
    )


def home_summary(db: Session, identity: Identity, recent_limit: int = 5) -> HomeSummaryView:
    repo = ExpenseRepository(db)
    scoped = repo.list_scoped(scope_for(identity))

    if not has_full_visibility(identity):
        return aggregation.build_home_summary(scoped, n=recent_limit)

    owners = repo.owners({e.user_id for e in scoped})
    return aggregation.build_home_summary(
        scoped, scoped, owners, is_admin=True, n=recent_limit
    )


def expense_graph(
    db: Session,
    identity: Identity,
    start: Optional[date] = None,
    end: Optional[date] = None,
    admin_view: bool = True,
    months: int = 6,
    today: Optional[date] = None,
) -> GraphView:
    """先规范化日期区间再查询，避免取出无界的数据。"""
    scope = scope_for(identity, admin_view)
    start, end = aggregation.normalize_date_range(start, end, today=today, months=months)
    expenses = ExpenseRepository(db).list_scoped(scope, (start, end))
    return aggregation.build_graph(expenses, start, end)


def superadmin_dashboard(db: Session) -> SuperAdminDashboardView:
    total_users = db.execute(
        select(func.count(User.id)).where(func.lower(User.username) != SUPERADMIN_USERNAME)
    ).scalar_one()
    expenses = db.execute(select(Expense)).scalars().all()
    return aggregation.build_superadmin_dashboard(total_users, expenses)


def superadmin_users(db: Session) -> list[SuperAdminUserRow]:
    rows = db.execute(
        select(
            User.id,
            User.username,
            User.created_at,
            func.count(Expense.id),
            func.coalesce(func.sum(Expense.amount), 0),
        )
        .outerjoin(Expense, Expense.user_id == User.id)
        .where(func.lower(User.username) != SUPERADMIN_USERNAME)
        .group_by(User.id, User.username, User.created_at)
        .order_by(User.id)
    ).all()
    return [
        SuperAdminUserRow(
            id=uid,
            username=username,
            registered_at=created_at,
            total_expenses=cnt,
            total_amount=aggregation.to_money(total),
        )
        for uid, username, created_at, cnt, total in rows
    ]


def superadmin_expenses(db: Session) -> list[SuperAdminExpenseRow]:
    expenses = ExpenseRepository(db).list_with_owners()
    return [
        SuperAdminExpenseRow(
            id=e.id,
            username=e.user.username if e.user else "",
            category=e.category,
            amount=e.amount,
            date=e.date,
            description=e.description,
        )
        for e in expenses
    ]


def admin_overview(db: Session, identity: Identity) -> dict:
    total_admins = db.execute(
        select(func.count(func.distinct(UserRole.user_id)))
        .join(Role, Role.id == UserRole.role_id)
        .where(Role.role_name == ROLE_ADMIN)
    ).scalar_one()
    return {
        "total_users": db.execute(select(func.count(User.id))).scalar_one(),
        "total_admins": total_admins,
        "total_menus": db.execute(select(func.count(Menu.id))).scalar_one(),
        "total_expenses": db.execute(select(func.count(Expense.id))).scalar_one(),
        "is_superadmin": identity.is_superadmin,
        "full_visibility": has_full_visibility(identity),
    }
