"""支出记录的增删改查，调用方必须先通过 policy 取得访问范围。"""

from datetime import date, datetime
from typing import Iterable, Mapping, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from models import Expense, User, UserRole

from expense_web.aggregation import OwnerInfo
from expense_web.db import commit_or_fault, db_write_lock
from expense_web.errors import ConflictError, NotFoundError, StorageFault
from expense_web.log import get_logger
from expense_web.policy import ExpenseScope
from expense_web.schemas import ExpenseForm, parse_form

logger = get_logger(__name__)

DateRange = Tuple[date, date]


class ExpenseRepository:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def create(self, owner_id: int, fields: Mapping) -> Expense:
        """新建支出；所属用户与创建时间由服务端决定，忽略客户端传入的值。"""
        form = parse_form(ExpenseForm, fields)
        expense = Expense(
            user_id=owner_id,
            description=form.description,
            amount=form.amount,
            category=form.category,
            date=form.date,
            notes=form.notes,
            created_at=datetime.now(),
        )
        with db_write_lock:
            self.db.add(expense)
            commit_or_fault(self.db, "expense.create_failed", owner_id=owner_id)
        self.db.refresh(expense)
        logger.info("expense.created", expense_id=expense.id, owner_id=owner_id)
        return expense

    def list_scoped(self, scope: ExpenseScope, date_range: Optional[DateRange] = None) -> list[Expense]:
        stmt = scope.apply(select(Expense))
        if date_range is not None:
            start, end = date_range
            stmt = stmt.where(Expense.date >= start, Expense.date <= end)
        stmt = stmt.order_by(Expense.date.desc(), Expense.id.desc())
        return list(self.db.execute(stmt).scalars().all())

    def get(self, expense_id: int, scope: ExpenseScope) -> Expense:
        """不存在与不可见都返回同样的 NotFoundError。"""
        stmt = scope.apply(select(Expense).where(Expense.id == expense_id))
        expense = self.db.execute(stmt).scalars().first()
        if expense is None:
            raise NotFoundError()
        return expense

    def update(self, expense_id: int, fields: Mapping, scope: ExpenseScope) -> Expense:
        expense = self.get(expense_id, scope)
        form = parse_form(ExpenseForm, fields)

        with db_write_lock:
            expense.description = form.description
            expense.amount = form.amount
            expense.category = form.category
            expense.date = form.date
            expense.notes = form.notes
            try:
                self.db.commit()
            except StaleDataError as exc:
                self.db.rollback()
                if not self.exists(expense_id):
                    # 读取之后被并发删除
                    logger.info("expense.update_target_deleted", expense_id=expense_id)
                    raise NotFoundError() from exc
                logger.warning("expense.update_conflict", expense_id=expense_id)
                raise ConflictError() from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("expense.update_failed", expense_id=expense_id, error=str(exc))
                raise StorageFault() from exc

        self.db.refresh(expense)
        logger.info("expense.updated", expense_id=expense_id)
        return expense

    def delete(self, expense_id: int, scope: ExpenseScope) -> bool:
        """幂等删除：记录不存在或不可见时直接返回 False。"""
        stmt = scope.apply(select(Expense).where(Expense.id == expense_id))
        expense = self.db.execute(stmt).scalars().first()
        if expense is None:
            return False

        with db_write_lock:
            self.db.delete(expense)
            try:
                self.db.commit()
            except StaleDataError:
                self.db.rollback()
                return False
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error("expense.delete_failed", expense_id=expense_id, error=str(exc))
                raise StorageFault() from exc

        logger.info("expense.deleted", expense_id=expense_id)
        return True

    def exists(self, expense_id: int) -> bool:
        stmt = select(Expense.id).where(Expense.id == expense_id)
        return self.db.execute(stmt).first() is not None

    def list_with_owners(self) -> list[Expense]:
        stmt = (
            select(Expense)
            .options(selectinload(Expense.user))
            .order_by(Expense.date.desc(), Expense.id.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def owners(self, user_ids: Optional[Iterable[int]] = None) -> dict[int, OwnerInfo]:
        """按用户 id 返回用户名与角色集合，用于按用户汇总。"""
        stmt = select(User).options(selectinload(User.user_roles).selectinload(UserRole.role))
        if user_ids is not None:
            ids = set(user_ids)
            if not ids:
                return {}
            stmt = stmt.where(User.id.in_(ids))
        users = self.db.execute(stmt).scalars().all()
        return {
            u.id: OwnerInfo(user_id=u.id, username=u.username, role_names=frozenset(u.role_names))
            for u in users
        }
