"""注册、登录校验以及管理员对用户账号的维护。"""

from typing import Mapping

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from models import ROLE_ADMIN, ROLE_USER, SUPERADMIN_USERNAME, User, UserRole, is_superadmin_name

from expense_web.db import commit_or_fault, db_write_lock
from expense_web.errors import AccessDenied, NotFoundError, StorageFault, ValidationError
from expense_web.identity import Identity
from expense_web.log import get_logger
from expense_web.menus import grant_menus
from expense_web.policy import ensure_can_manage, require_admin, require_superadmin
from expense_web.provisioning import ensure_role, menu_titles_for_roles
from expense_web.schemas import (
    LoginForm,
    PasswordChangeForm,
    PasswordResetForm,
    RegisterForm,
    UsernameForm,
    parse_form,
)

logger = get_logger(__name__)

USERNAME_TAKEN = "Username is already taken."
INVALID_CREDENTIALS = "Invalid username or password."

PORTAL_USER = "user"
PORTAL_ADMIN = "admin"


def _username_exists(db: Session, username: str, exclude_id=None) -> bool:
    stmt = select(User.id).where(func.lower(User.username) == username.lower())
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return db.execute(stmt).first() is not None


def _load_user(db: Session, user_id: int) -> User:
    user = (
        db.execute(
            select(User)
            .options(selectinload(User.user_roles).selectinload(UserRole.role))
            .where(User.id == user_id)
        )
        .scalars()
        .first()
    )
    if user is None:
        raise NotFoundError()
    return user


def _create_account(db: Session, form: RegisterForm) -> User:
    """
    创建账号并授予 "User" 角色及其菜单。

    先查重给出友好的提示；忽略大小写的唯一索引兜底并发注册同名的情况。
    """
    if is_superadmin_name(form.username) or _username_exists(db, form.username):
        raise ValidationError.single("username", USERNAME_TAKEN)

    with db_write_lock:
        try:
            user = User(username=form.username)
            user.set_password(form.password)
            db.add(user)
            db.flush()

            role = ensure_role(db, ROLE_USER)
            db.add(UserRole(user_id=user.id, role_id=role.id))
            db.flush()
            grant_menus(db, user.id, menu_titles_for_roles([ROLE_USER]))
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            logger.info("auth.register_conflict", username=form.username)
            raise ValidationError.single("username", USERNAME_TAKEN) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("auth.register_failed", error=str(exc))
            raise StorageFault() from exc
    return user


def register(db: Session, data: Mapping) -> User:
    """自助注册。"""
    user = _create_account(db, parse_form(RegisterForm, data))
    logger.info("auth.registered", user_id=user.id)
    return user


def create_user(db: Session, identity: Identity, data: Mapping) -> User:
    """管理员代为创建普通用户，规则与自助注册相同。"""
    require_admin(identity)
    user = _create_account(db, parse_form(RegisterForm, data))
    logger.info("user.created", user_id=user.id, by=identity.user_id)
    return user


def authenticate(db: Session, data: Mapping, portal: str = PORTAL_USER) -> User:
    """
    校验用户名密码。

    超级管理员只能从管理入口登录，其他用户只能从普通入口登录。
    """
    form = parse_form(LoginForm, data)
    user = (
        db.execute(
            select(User)
            .options(selectinload(User.user_roles).selectinload(UserRole.role))
            .where(User.username == form.username)
        )
        .scalars()
        .first()
    )
    if user is None or not user.check_password(form.password):
        logger.info("auth.login_failed", username=form.username, portal=portal)
        raise ValidationError.single("__all__", INVALID_CREDENTIALS)

    if portal == PORTAL_USER and user.is_superadmin:
        raise ValidationError.single(
            "__all__", "Superadmin login is restricted. Please use the admin portal."
        )
    if portal == PORTAL_ADMIN and not user.is_superadmin:
        raise ValidationError.single(
            "__all__",
            "This login page is for superadmin only. Please use the regular login page.",
        )

    logger.info("auth.login", user_id=user.id, portal=portal)
    return user


def change_password(db: Session, user_id: int, data: Mapping) -> None:
    form = parse_form(PasswordChangeForm, data)
    user = _load_user(db, user_id)
    if not user.check_password(form.current_password):
        raise ValidationError.single("current_password", "Current password is incorrect.")
    with db_write_lock:
        user.set_password(form.new_password)
        commit_or_fault(db, "auth.password_change_failed", user_id=user_id)
    logger.info("auth.password_changed", user_id=user_id)


def list_users(db: Session, identity: Identity) -> list[User]:
    """非超级管理员看不到超级管理员账号。"""
    stmt = (
        select(User)
        .options(selectinload(User.user_roles).selectinload(UserRole.role))
        .order_by(User.id)
    )
    if not identity.is_superadmin:
        stmt = stmt.where(func.lower(User.username) != SUPERADMIN_USERNAME)
    return list(db.execute(stmt).scalars().all())


def get_user(db: Session, identity: Identity, user_id: int) -> User:
    user = _load_user(db, user_id)
    if user.is_superadmin and not identity.is_superadmin:
        raise NotFoundError()
    return user


def update_username(db: Session, identity: Identity, user_id: int, data: Mapping) -> User:
    user = _load_user(db, user_id)
    ensure_can_manage(identity, user)
    form = parse_form(UsernameForm, data)
    if user.is_superadmin and not is_superadmin_name(form.username):
        # 保留账号名不可更改
        raise ValidationError.single("username", "The superadmin username cannot be changed.")
    if is_superadmin_name(form.username) and not user.is_superadmin:
        raise ValidationError.single("username", USERNAME_TAKEN)
    if _username_exists(db, form.username, exclude_id=user_id):
        raise ValidationError.single("username", USERNAME_TAKEN)

    with db_write_lock:
        user.username = form.username
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ValidationError.single("username", USERNAME_TAKEN) from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("user.update_failed", user_id=user_id, error=str(exc))
            raise StorageFault() from exc
    logger.info("user.updated", user_id=user_id)
    return user


def delete_user(db: Session, identity: Identity, user_id: int) -> bool:
    """删除用户及其角色、菜单、支出；不存在时视为成功。"""
    user = db.get(User, user_id)
    if user is None:
        return False
    ensure_can_manage(identity, user)
    if user.is_superadmin:
        raise AccessDenied("The superadmin account cannot be deleted.")
    with db_write_lock:
        db.delete(user)
        commit_or_fault(db, "user.delete_failed", user_id=user_id)
    logger.info("user.deleted", user_id=user_id, by=identity.user_id)
    return True


def reset_password(db: Session, identity: Identity, user_id: int, data: Mapping) -> None:
    require_superadmin(identity)
    form = parse_form(PasswordResetForm, data)
    user = _load_user(db, user_id)
    if user.is_superadmin:
        raise AccessDenied("Cannot modify the superadmin account.")
    with db_write_lock:
        user.set_password(form.new_password)
        user.invalidate_sessions()
        commit_or_fault(db, "user.password_reset_failed", user_id=user_id)
    logger.info("user.password_reset", user_id=user_id)


def _modifiable_by_superadmin(db: Session, identity: Identity, user_id: int) -> User:
    require_superadmin(identity)
    user = _load_user(db, user_id)
    if user.is_superadmin:
        raise AccessDenied("Cannot modify the superadmin account.")
    return user


def assign_admin_role(db: Session, identity: Identity, user_id: int) -> bool:
    """授予管理员角色；已是管理员时返回 False。"""
    user = _modifiable_by_superadmin(db, identity, user_id)
    if user.is_admin:
        return False
    with db_write_lock:
        try:
            role = ensure_role(db, ROLE_ADMIN)
            db.add(UserRole(user_id=user.id, role_id=role.id))
            db.flush()
            grant_menus(db, user.id, menu_titles_for_roles([ROLE_ADMIN]))
            user.invalidate_sessions()
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("user.assign_admin_failed", user_id=user_id, error=str(exc))
            raise StorageFault() from exc
    logger.info("user.admin_assigned", user_id=user_id)
    return True


def remove_admin_role(db: Session, identity: Identity, user_id: int) -> bool:
    """撤销管理员角色；本来就不是管理员时返回 False。已授予的菜单保持不变。"""
    user = _modifiable_by_superadmin(db, identity, user_id)
    link = next((ur for ur in user.user_roles if ur.role and ur.role.role_name == ROLE_ADMIN), None)
    if link is None:
        return False
    with db_write_lock:
        user.user_roles.remove(link)
        user.invalidate_sessions()
        commit_or_fault(db, "user.remove_admin_failed", user_id=user_id)
    logger.info("user.admin_removed", user_id=user_id)
    return True
