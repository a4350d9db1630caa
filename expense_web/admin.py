"""管理端路由：用户与角色管理、菜单管理、超级管理员视图。"""

from typing import Mapping

from flask import Blueprint, g, jsonify, redirect, request, session, url_for
from sqlalchemy import select

from models import Role

from expense_web import accounts, dashboards, identity, menus
from expense_web.db import get_db_session
from expense_web.errors import ValidationError
from expense_web.log import get_logger
from expense_web.policy import require_admin, require_superadmin
from expense_web.routes import form_data, safe_next
from expense_web.schemas import INVALID_FORM, MenuView, UserView

bp = Blueprint("admin", __name__, url_prefix="/admin")

logger = get_logger(__name__)


@bp.before_request
def check_admin():
    if request.endpoint in ("admin.login", "admin.do_login"):
        return None
    require_admin(g.identity)
    return None


def _user_payload(user) -> dict:
    return UserView.model_validate(user).model_dump(mode="json")


def _menu_ids(data) -> list[int]:
    if hasattr(data, "getlist"):
        raw = data.getlist("menu_ids")
    elif not isinstance(data, Mapping):
        raise ValidationError.single("__all__", INVALID_FORM)
    else:
        raw = data.get("menu_ids") or []
        if not isinstance(raw, list):
            raw = [raw]
    try:
        return [int(v) for v in raw]
    except (TypeError, ValueError) as exc:
        raise ValidationError.single("menu_ids", "Menu ids must be integers.") from exc


@bp.route("/login")
def login():
    if g.identity.is_superadmin:
        return redirect(url_for("admin.super_dashboard"))
    return jsonify({"form": "admin_login", "fields": ["username", "password"]})


@bp.post("/login")
def do_login():
    with get_db_session() as db_session:
        user = accounts.authenticate(db_session, form_data(), portal=accounts.PORTAL_ADMIN)
        identity.sign_in(session, user)
    session.permanent = True
    return redirect(safe_next("admin.super_dashboard"))


@bp.route("/")
def index():
    with get_db_session() as db_session:
        overview = dashboards.admin_overview(db_session, g.identity)
    return jsonify(overview)


# ---- 用户管理 ----


@bp.route("/users")
def users_list():
    with get_db_session() as db_session:
        users = accounts.list_users(db_session, g.identity)
        payload = [_user_payload(u) for u in users]
    return jsonify(payload)


@bp.post("/users/new")
def users_new():
    with get_db_session() as db_session:
        user = accounts.create_user(db_session, g.identity, form_data())
        payload = _user_payload(user)
    return jsonify({"success": True, "user": payload}), 201


@bp.route("/users/<int:user_id>")
def users_detail(user_id: int):
    with get_db_session() as db_session:
        user = accounts.get_user(db_session, g.identity, user_id)
        payload = _user_payload(user)
        payload["menus"] = [m.model_dump() for m in menus.menus_for(db_session, user_id)]
    return jsonify(payload)


@bp.post("/users/<int:user_id>/edit")
def users_edit(user_id: int):
    with get_db_session() as db_session:
        user = accounts.update_username(db_session, g.identity, user_id, form_data())
        identity.refresh_principal(session, user)
        payload = _user_payload(user)
    return jsonify({"success": True, "user": payload})


@bp.post("/users/<int:user_id>/delete")
def users_delete(user_id: int):
    with get_db_session() as db_session:
        deleted = accounts.delete_user(db_session, g.identity, user_id)
    if deleted and g.identity.user_id == user_id:
        identity.sign_out(session)
    return jsonify({"success": True, "deleted": deleted})


@bp.post("/users/<int:user_id>/password")
def users_reset_password(user_id: int):
    with get_db_session() as db_session:
        accounts.reset_password(db_session, g.identity, user_id, form_data())
    return jsonify({"success": True})


@bp.post("/users/<int:user_id>/roles/admin")
def users_assign_admin(user_id: int):
    with get_db_session() as db_session:
        changed = accounts.assign_admin_role(db_session, g.identity, user_id)
    if not changed:
        return jsonify({"success": True, "changed": False, "warning": "User is already an admin."})
    return jsonify({"success": True, "changed": True})


@bp.post("/users/<int:user_id>/roles/admin/remove")
def users_remove_admin(user_id: int):
    with get_db_session() as db_session:
        changed = accounts.remove_admin_role(db_session, g.identity, user_id)
    if not changed:
        return jsonify({"success": True, "changed": False, "warning": "User is not an admin."})
    return jsonify({"success": True, "changed": True})


# ---- 菜单管理 ----


@bp.route("/roles")
def roles_list():
    with get_db_session() as db_session:
        roles = db_session.execute(select(Role).order_by(Role.role_name)).scalars().all()
        payload = [{"id": r.id, "role_name": r.role_name} for r in roles]
    return jsonify(payload)


@bp.route("/menus")
def menus_list():
    with get_db_session() as db_session:
        payload = [
            MenuView.model_validate(m).model_dump() for m in menus.list_menus(db_session)
        ]
    return jsonify(payload)


@bp.post("/menus/new")
def menus_new():
    with get_db_session() as db_session:
        menu = menus.create_menu(db_session, form_data())
        payload = MenuView.model_validate(menu).model_dump()
    return jsonify({"success": True, "menu": payload}), 201


@bp.post("/menus/<int:menu_id>/edit")
def menus_edit(menu_id: int):
    with get_db_session() as db_session:
        menu = menus.update_menu(db_session, menu_id, form_data())
        payload = MenuView.model_validate(menu).model_dump()
    return jsonify({"success": True, "menu": payload})


@bp.post("/menus/<int:menu_id>/delete")
def menus_delete(menu_id: int):
    with get_db_session() as db_session:
        deleted = menus.delete_menu(db_session, menu_id)
    return jsonify({"success": True, "deleted": deleted})


@bp.post("/roles/<int:role_id>/menus")
def roles_assign_menus(role_id: int):
    menu_ids = _menu_ids(form_data())
    with get_db_session() as db_session:
        affected = menus.assign_menus_to_role(db_session, role_id, menu_ids)
    if affected == 0:
        return jsonify(
            {"success": True, "users_updated": 0, "warning": "No users are assigned to this role."}
        )
    return jsonify({"success": True, "users_updated": affected})


# ---- 超级管理员视图 ----


@bp.route("/super/dashboard")
def super_dashboard():
    require_superadmin(g.identity)
    with get_db_session() as db_session:
        view = dashboards.superadmin_dashboard(db_session)
    return jsonify(view.model_dump(mode="json"))


@bp.route("/super/users")
def super_users():
    require_superadmin(g.identity)
    with get_db_session() as db_session:
        rows = dashboards.superadmin_users(db_session)
    return jsonify([row.model_dump(mode="json") for row in rows])


@bp.route("/super/expenses")
def super_expenses():
    require_superadmin(g.identity)
    with get_db_session() as db_session:
        rows = dashboards.superadmin_expenses(db_session)
    return jsonify([row.model_dump(mode="json") for row in rows])
