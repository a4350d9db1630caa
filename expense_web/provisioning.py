"""
启动时的初始化数据：角色、超级管理员、默认菜单及角色对应的菜单授权。

每一步都先检查是否已存在，可以安全地重复执行；任何持久化错误都会
回滚并中止本次执行，下次重新运行即可补齐。
"""

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models import (
    ROLE_ADMIN,
    ROLE_USER,
    SUPERADMIN_USERNAME,
    Menu,
    Role,
    User,
    UserMenu,
    UserRole,
)

from expense_web.db import db_write_lock
from expense_web.errors import StorageFault
from expense_web.log import get_logger
from expense_web.menus import grant_menus

logger = get_logger(__name__)

DEFAULT_ROLES = (ROLE_USER, ROLE_ADMIN)

DEFAULT_MENUS = (
    ("Dashboard", "/dashboard"),
    ("Add Expense", "/expenses/new"),
    ("View Expenses", "/expenses"),
    ("Expense Graph", "/expenses/graph"),
    ("Manage Users", "/admin/users"),
    ("Manage Menus", "/admin/menus"),
)

ROLE_MENU_MAP = {
    ROLE_USER: ("Dashboard", "Add Expense", "View Expenses", "Expense Graph"),
    ROLE_ADMIN: ("Dashboard", "View Expenses", "Expense Graph", "Manage Users", "Manage Menus"),
}


@dataclass
class ProvisioningReport:
    roles_created: int = 0
    superadmin_created: bool = False
    menus_created: int = 0
    menus_granted: int = 0
    superadmin_repairs: int = 0

    @property
    def changed(self) -> bool:
        return bool(
            self.roles_created
            or self.superadmin_created
            or self.menus_created
            or self.menus_granted
            or self.superadmin_repairs
        )


def menu_titles_for_roles(role_names: Iterable[str]) -> set[str]:
    titles: set[str] = set()
    for name in role_names:
        titles.update(ROLE_MENU_MAP.get(name, ()))
    return titles


def ensure_role(db: Session, role_name: str) -> Role:
    role = db.execute(select(Role).where(Role.role_name == role_name)).scalars().first()
    if role is None:
        role = Role(role_name=role_name)
        db.add(role)
        db.flush()
    return role


def _ensure_roles(db: Session, report: ProvisioningReport) -> dict[str, Role]:
    existing = {r.role_name: r for r in db.execute(select(Role)).scalars().all()}
    for name in DEFAULT_ROLES:
        if name not in existing:
            role = Role(role_name=name)
            db.add(role)
            existing[name] = role
            report.roles_created += 1
    db.flush()
    return existing


def _find_superadmin(db: Session):
    return (
        db.execute(select(User).where(func.lower(User.username) == SUPERADMIN_USERNAME))
        .scalars()
        .first()
    )


def _ensure_superadmin(
    db: Session, password: str, roles: dict[str, Role], report: ProvisioningReport
) -> User:
    user = _find_superadmin(db)
    if user is not None:
        return user

    user = User(username=SUPERADMIN_USERNAME)
    user.set_password(password)
    db.add(user)
    db.flush()

    # 首次创建时同时授予两个角色和当前已有的全部菜单
    for name in DEFAULT_ROLES:
        db.add(UserRole(user_id=user.id, role_id=roles[name].id))
    for menu_id in db.execute(select(Menu.id)).scalars().all():
        db.add(UserMenu(user_id=user.id, menu_id=menu_id))
    db.flush()

    report.superadmin_created = True
    logger.info("provisioning.superadmin_created", user_id=user.id)
    return user


def _ensure_menus(db: Session, report: ProvisioningReport) -> None:
    existing_titles = set(db.execute(select(Menu.title)).scalars().all())
    for title, url in DEFAULT_MENUS:
        if title not in existing_titles:
            db.add(Menu(title=title, url=url))
            report.menus_created += 1
    db.flush()


def _grant_role_menus(db: Session, report: ProvisioningReport) -> None:
    users = (
        db.execute(
            select(User).options(selectinload(User.user_roles).selectinload(UserRole.role))
        )
        .scalars()
        .all()
    )
    for user in users:
        titles = menu_titles_for_roles(user.role_names)
        report.menus_granted += grant_menus(db, user.id, titles)
    db.flush()


def _reaffirm_superadmin(db: Session, user: User, roles: dict[str, Role], report: ProvisioningReport) -> None:
    held = set(
        db.execute(select(UserRole.role_id).where(UserRole.user_id == user.id)).scalars().all()
    )
    for name in DEFAULT_ROLES:
        if roles[name].id not in held:
            db.add(UserRole(user_id=user.id, role_id=roles[name].id))
            report.superadmin_repairs += 1

    all_titles = db.execute(select(Menu.title)).scalars().all()
    report.superadmin_repairs += grant_menus(db, user.id, all_titles)
    db.flush()


def seed(db: Session, superadmin_password: str) -> ProvisioningReport:
    """执行全部初始化步骤，返回本次新增内容的统计。"""
    report = ProvisioningReport()
    with db_write_lock:
        try:
            roles = _ensure_roles(db, report)
            db.commit()

            superadmin = _ensure_superadmin(db, superadmin_password, roles, report)
            db.commit()

            _ensure_menus(db, report)
            db.commit()

            _grant_role_menus(db, report)
            db.commit()

            _reaffirm_superadmin(db, superadmin, roles, report)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("provisioning.failed", error=str(exc))
            raise StorageFault() from exc

    logger.info(
        "provisioning.completed",
        roles_created=report.roles_created,
        superadmin_created=report.superadmin_created,
        menus_created=report.menus_created,
        menus_granted=report.menus_granted,
        superadmin_repairs=report.superadmin_repairs,
    )
    return report
