"""
看板与图表的聚合计算。

这里的函数都是纯函数：输入是已按权限范围筛选并加载到内存的支出
集合，不再做任何额外的权限过滤，也不访问数据库。金额统一使用 Decimal。
"""

import calendar
import datetime as dt
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from models import ROLE_ADMIN, is_superadmin_name

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


class Totals(BaseModel):
    count: int = 0
    sum_amount: Decimal = ZERO


class CategorySummary(BaseModel):
    category: str
    count: int
    sum_amount: Decimal


class OwnerInfo(BaseModel):
    user_id: int
    username: str
    role_names: frozenset[str] = frozenset()


class UserSummary(BaseModel):
    user_id: int
    username: str
    count: int
    sum_amount: Decimal
    is_admin: bool = False
    is_superadmin: bool = False


class RecentExpense(BaseModel):
    id: int
    date: dt.date
    description: str
    category: str
    amount: Decimal


class AdminRecentExpense(RecentExpense):
    username: str
    is_admin: bool = False
    is_superadmin: bool = False


class DailyBucket(BaseModel):
    date: dt.date
    sum_amount: Decimal
    count: int


class MonthlyBucket(BaseModel):
    month: dt.date
    sum_amount: Decimal
    count: int


class GraphView(BaseModel):
    start_date: dt.date
    end_date: dt.date
    daily: list[DailyBucket] = Field(default_factory=list)
    categories: list[CategorySummary] = Field(default_factory=list)
    total_amount: Decimal = ZERO
    total_count: int = 0
    average_daily: Decimal = ZERO


class DashboardView(BaseModel):
    total_expenses: int = 0
    total_amount: Decimal = ZERO
    categories: list[CategorySummary] = Field(default_factory=list)
    recent: list[RecentExpense] = Field(default_factory=list)
    # 以下仅管理员可见
    user_expenses: list[UserSummary] = Field(default_factory=list)
    admin_recent: list[AdminRecentExpense] = Field(default_factory=list)


class HomeSummaryView(BaseModel):
    total_expenses: int = 0
    total_amount: Decimal = ZERO
    recent: list[RecentExpense] = Field(default_factory=list)
    monthly: list[MonthlyBucket] = Field(default_factory=list)
    user_expenses: list[UserSummary] = Field(default_factory=list)
    admin_recent: list[AdminRecentExpense] = Field(default_factory=list)


class SuperAdminDashboardView(BaseModel):
    total_users: int = 0
    total_expenses: int = 0
    monthly: list[MonthlyBucket] = Field(default_factory=list)


class SuperAdminUserRow(BaseModel):
    id: int
    username: str
    registered_at: Optional[dt.datetime] = None
    total_expenses: int = 0
    total_amount: Decimal = ZERO


class SuperAdminExpenseRow(BaseModel):
    id: int
    username: str
    category: str
    amount: Decimal
    date: dt.date
    description: str


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT)


def _day(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def totals(expenses: Iterable) -> Totals:
    count = 0
    total = ZERO
    for e in expenses:
        count += 1
        total += to_money(e.amount)
    return Totals(count=count, sum_amount=total)


def by_category(expenses: Iterable) -> list[CategorySummary]:
    """按分类汇总，金额降序（金额相同按分类名）。"""
    buckets: dict[str, list] = defaultdict(lambda: [0, ZERO])
    for e in expenses:
        bucket = buckets[e.category]
        bucket[0] += 1
        bucket[1] += to_money(e.amount)

    rows = [
        CategorySummary(category=cat, count=cnt, sum_amount=amt)
        for cat, (cnt, amt) in buckets.items()
    ]
    rows.sort(key=lambda r: r.category)
    rows.sort(key=lambda r: r.sum_amount, reverse=True)
    return rows


def by_user(expenses: Iterable, owner_lookup: Mapping[int, OwnerInfo]) -> list[UserSummary]:
    """按用户汇总，金额降序；管理员标记取自该用户的角色集合。"""
    buckets: dict[int, list] = defaultdict(lambda: [0, ZERO])
    for e in expenses:
        bucket = buckets[e.user_id]
        bucket[0] += 1
        bucket[1] += to_money(e.amount)

    rows = []
    for user_id, (cnt, amt) in buckets.items():
        owner = owner_lookup.get(user_id)
        username = owner.username if owner else ""
        rows.append(
            UserSummary(
                user_id=user_id,
                username=username,
                count=cnt,
                sum_amount=amt,
                is_admin=bool(owner and ROLE_ADMIN in owner.role_names),
                is_superadmin=is_superadmin_name(username),
            )
        )
    rows.sort(key=lambda r: r.user_id)
    rows.sort(key=lambda r: r.sum_amount, reverse=True)
    return rows


def _recency_key(e) -> Tuple[date, int]:
    return (_day(e.date), e.id or 0)


def recent(expenses: Iterable, n: int = 5) -> list[RecentExpense]:
    """最近 n 条：日期降序，同一天按 id 降序，保证排序稳定。"""
    ordered = sorted(expenses, key=_recency_key, reverse=True)[: max(n, 0)]
    return [
        RecentExpense(
            id=e.id,
            date=_day(e.date),
            description=e.description,
            category=e.category,
            amount=to_money(e.amount),
        )
        for e in ordered
    ]


def admin_recent(
    expenses: Iterable, owner_lookup: Mapping[int, OwnerInfo], n: int = 5
) -> list[AdminRecentExpense]:
    ordered = sorted(expenses, key=_recency_key, reverse=True)[: max(n, 0)]
    rows = []
    for e in ordered:
        owner = owner_lookup.get(e.user_id)
        username = owner.username if owner else ""
        rows.append(
            AdminRecentExpense(
                id=e.id,
                date=_day(e.date),
                description=e.description,
                category=e.category,
                amount=to_money(e.amount),
                username=username,
                is_admin=bool(owner and ROLE_ADMIN in owner.role_names),
                is_superadmin=is_superadmin_name(username),
            )
        )
    return rows


def by_day(
    expenses: Iterable, start: Optional[date] = None, end: Optional[date] = None
) -> list[DailyBucket]:
    """
    按天汇总，日期升序。

    只返回实际有支出的日期，不补零；给出 start/end 时只统计区间内（含端点）。
    """
    buckets: dict[date, list] = defaultdict(lambda: [0, ZERO])
    for e in expenses:
        day = _day(e.date)
        if start is not None and day < start:
            continue
        if end is not None and day > end:
            continue
        bucket = buckets[day]
        bucket[0] += 1
        bucket[1] += to_money(e.amount)

    return [
        DailyBucket(date=day, sum_amount=buckets[day][1], count=buckets[day][0])
        for day in sorted(buckets)
    ]


def by_month(expenses: Iterable) -> list[MonthlyBucket]:
    """按 (年, 月) 汇总，月份升序，月份以当月 1 日表示。"""
    buckets: dict[date, list] = defaultdict(lambda: [0, ZERO])
    for e in expenses:
        day = _day(e.date)
        bucket = buckets[date(day.year, day.month, 1)]
        bucket[0] += 1
        bucket[1] += to_money(e.amount)

    return [
        MonthlyBucket(month=key, sum_amount=buckets[key][1], count=buckets[key][0])
        for key in sorted(buckets)
    ]


def average_daily(days: Sequence[DailyBucket]) -> Decimal:
    """日均支出；没有任何日期时返回 0。"""
    if not days:
        return ZERO
    total = sum((d.sum_amount for d in days), ZERO)
    return (total / len(days)).quantize(CENT)


def shift_months(day: date, months: int) -> date:
    """按月偏移日期，目标月份天数不足时取月末。"""
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    _, last_day = calendar.monthrange(year, month)
    return day.replace(year=year, month=month, day=min(day.day, last_day))


def normalize_date_range(
    start: Optional[date],
    end: Optional[date],
    today: Optional[date] = None,
    months: int = 6,
) -> Tuple[date, date]:
    """
    规范化图表的日期区间，须在查询之前调用。

    1. 缺省的开始日期取“今天往前 months 个月”，缺省的结束日期取今天；
    2. 晚于今天的端点一律收回到今天；
    3. 开始晚于结束时交换两者。
    """
    today = today or date.today()
    start = _day(start) if start is not None else shift_months(today, -months)
    end = _day(end) if end is not None else today

    if start > today:
        start = today
    if end > today:
        end = today

    if start > end:
        start, end = end, start
    return start, end


def build_graph(expenses: Sequence, start: date, end: date) -> GraphView:
    daily = by_day(expenses, start, end)
    in_range = [e for e in expenses if start <= _day(e.date) <= end]
    summary = totals(in_range)
    return GraphView(
        start_date=start,
        end_date=end,
        daily=daily,
        categories=by_category(in_range),
        total_amount=summary.sum_amount,
        total_count=summary.count,
        average_daily=average_daily(daily),
    )


def build_dashboard(
    scoped: Sequence,
    all_expenses: Sequence = (),
    owner_lookup: Optional[Mapping[int, OwnerInfo]] = None,
    is_admin: bool = False,
    n: int = 5,
) -> DashboardView:
    summary = totals(scoped)
    view = DashboardView(
        total_expenses=summary.count,
        total_amount=summary.sum_amount,
        categories=by_category(scoped),
        recent=recent(scoped, n),
    )
    if is_admin:
        lookup = owner_lookup or {}
        view.user_expenses = by_user(all_expenses, lookup)
        view.admin_recent = admin_recent(all_expenses, lookup, n)
    return view


def build_home_summary(
    scoped: Sequence,
    all_expenses: Sequence = (),
    owner_lookup: Optional[Mapping[int, OwnerInfo]] = None,
    is_admin: bool = False,
    n: int = 5,
) -> HomeSummaryView:
    summary = totals(scoped)
    view = HomeSummaryView(
        total_expenses=summary.count,
        total_amount=summary.sum_amount,
        recent=recent(scoped, n),
    )
    if is_admin:
        lookup = owner_lookup or {}
        view.user_expenses = by_user(all_expenses, lookup)
        view.admin_recent = admin_recent(all_expenses, lookup, n)
    else:
        view.monthly = by_month(scoped)
    return view


def build_superadmin_dashboard(total_users: int, expenses: Sequence) -> SuperAdminDashboardView:
    return SuperAdminDashboardView(
        total_users=total_users,
        total_expenses=len(expenses),
        monthly=by_month(expenses),
    )
