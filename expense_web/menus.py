"""导航菜单：按用户授权解析可见菜单，以及管理员的菜单维护。"""

from typing import Iterable, Mapping

from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Menu, Role, User, UserMenu, UserRole

from expense_web.db import commit_or_fault, db_write_lock
from expense_web.errors import NotFoundError, StorageFault, ValidationError
from expense_web.log import get_logger
from expense_web.schemas import MenuForm, parse_form

logger = get_logger(__name__)


class MenuItem(BaseModel):
    title: str
    url: str


def menus_for(db: Session, user_id: int) -> list[MenuItem]:
    """返回用户被显式授权的菜单，按标题字母序。"""
    rows = db.execute(
        select(Menu.title, Menu.url)
        .join(UserMenu, UserMenu.menu_id == Menu.id)
        .where(UserMenu.user_id == user_id)
        .order_by(Menu.title)
    ).all()
    return [MenuItem(title=title, url=url) for title, url in rows]


def list_menus(db: Session) -> list[Menu]:
    return list(db.execute(select(Menu).order_by(Menu.title)).scalars().all())


def get_menu(db: Session, menu_id: int) -> Menu:
    menu = db.get(Menu, menu_id)
    if menu is None:
        raise NotFoundError()
    return menu


def _title_taken(db: Session, title: str, exclude_id=None) -> bool:
    stmt = select(Menu.id).where(Menu.title == title)
    if exclude_id is not None:
        stmt = stmt.where(Menu.id != exclude_id)
    return db.execute(stmt).first() is not None


def _commit_menu(db: Session, event: str, **context) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise ValidationError.single("title", "A menu with this title already exists.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(event, error=str(exc), **context)
        raise StorageFault() from exc


def create_menu(db: Session, data: Mapping) -> Menu:
    form = parse_form(MenuForm, data)
    if _title_taken(db, form.title):
        raise ValidationError.single("title", "A menu with this title already exists.")

    menu = Menu(title=form.title, url=form.url)
    with db_write_lock:
        db.add(menu)
        _commit_menu(db, "menu.create_failed")
    logger.info("menu.created", menu_id=menu.id, title=menu.title)
    return menu


def update_menu(db: Session, menu_id: int, data: Mapping) -> Menu:
    menu = get_menu(db, menu_id)
    form = parse_form(MenuForm, data)
    if _title_taken(db, form.title, exclude_id=menu_id):
        raise ValidationError.single("title", "A menu with this title already exists.")

    with db_write_lock:
        menu.title = form.title
        menu.url = form.url
        _commit_menu(db, "menu.update_failed", menu_id=menu_id)
    logger.info("menu.updated", menu_id=menu_id)
    return menu


def delete_menu(db: Session, menu_id: int) -> bool:
    """删除菜单及其授权；不存在时视为成功。"""
    menu = db.get(Menu, menu_id)
    if menu is None:
        return False
    with db_write_lock:
        db.delete(menu)
        commit_or_fault(db, "menu.delete_failed", menu_id=menu_id)
    logger.info("menu.deleted", menu_id=menu_id)
    return True


def grant_menus(db: Session, user_id: int, titles: Iterable[str]) -> int:
    """为用户补齐指定标题的菜单授权，只增不减；返回新增数量。调用方负责提交。"""
    wanted = set(titles)
    if not wanted:
        return 0
    menu_ids = db.execute(select(Menu.id).where(Menu.title.in_(wanted))).scalars().all()
    existing = set(
        db.execute(select(UserMenu.menu_id).where(UserMenu.user_id == user_id)).scalars().all()
    )
    added = 0
    for menu_id in menu_ids:
        if menu_id not in existing:
            db.add(UserMenu(user_id=user_id, menu_id=menu_id))
            added += 1
    return added


def assign_menus_to_role(db: Session, role_id: int, menu_ids: Iterable[int]) -> int:
    """
    用选中的菜单替换持有该角色的所有用户的菜单授权。

    返回受影响的用户数；没有用户持有该角色时返回 0 且不做任何修改。
    """
    if db.get(Role, role_id) is None:
        raise NotFoundError()

    selected = set(menu_ids)
    valid_ids = set(
        db.execute(select(Menu.id).where(Menu.id.in_(selected))).scalars().all()
    ) if selected else set()
    unknown = selected - valid_ids
    if unknown:
        raise ValidationError.single("menu_ids", f"Unknown menu id(s): {sorted(unknown)}")

    user_ids = (
        db.execute(
            select(User.id).join(UserRole, UserRole.user_id == User.id).where(UserRole.role_id == role_id)
        )
        .scalars()
        .all()
    )
    if not user_ids:
        logger.warning("menu.assign_no_users", role_id=role_id)
        return 0

    with db_write_lock:
        db.execute(delete(UserMenu).where(UserMenu.user_id.in_(user_ids)))
        for user_id in user_ids:
            for menu_id in sorted(valid_ids):
                db.add(UserMenu(user_id=user_id, menu_id=menu_id))
        commit_or_fault(db, "menu.assign_failed", role_id=role_id)

    logger.info("menu.assigned", role_id=role_id, users=len(user_ids), menus=len(valid_ids))
    return len(user_ids)
