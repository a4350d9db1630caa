"""用户端路由：登录注册、支出增删改查、看板、图表与导出。"""

from datetime import date
from io import BytesIO

from flask import (
    Blueprint,
    current_app,
    g,
    jsonify,
    redirect,
    request,
    send_file,
    session,
    url_for,
)
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from expense_web import accounts, dashboards, identity
from expense_web.aggregation import normalize_date_range
from expense_web.db import get_db_session
from expense_web.errors import LoginRequired, StorageFault, TrackerError, ValidationError
from expense_web.export import export_workbook
from expense_web.log import get_logger
from expense_web.menus import menus_for
from expense_web.policy import require_login, scope_for
from expense_web.repository import ExpenseRepository
from expense_web.schemas import DateRangeQuery, ExpenseView, UserView, parse_form

bp = Blueprint("main", __name__)

logger = get_logger(__name__)

AUTH_FREE_ENDPOINTS = {
    "main.login",
    "main.register",
    "main.do_login",
    "main.do_register",
    "main.health",
    "admin.login",
    "admin.do_login",
    "static",
}

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def form_data():
    """JSON 请求体优先，否则取表单。"""
    return request.get_json(silent=True) or request.form


def safe_next(default_endpoint: str) -> str:
    next_url = request.args.get("next") or ""
    # 只允许站内相对路径
    if next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return url_for(default_endpoint)


def settings():
    return current_app.config["SETTINGS"]


def current_user_id() -> int:
    require_login(g.identity)
    if g.identity.user_id is None:
        raise LoginRequired()
    return g.identity.user_id


@bp.before_app_request
def load_identity():
    g.identity = identity.resolve(session)

    # 账号被删除、改名或被吊销会话后，旧 cookie 不再有效
    if g.identity.is_authenticated:
        with get_db_session() as db_session:
            current = identity.is_current(db_session, g.identity)
        if not current:
            logger.info("session.revoked", user_id=g.identity.user_id)
            identity.sign_out(session)
            g.identity = identity.Identity.anonymous()

    if request.endpoint in AUTH_FREE_ENDPOINTS or request.endpoint is None:
        return None

    if not g.identity.is_authenticated:
        raise LoginRequired()
    return None


@bp.teardown_app_request
def shutdown_session(exception=None):
    session_factory = current_app.config.get("SessionFactory")
    if session_factory:
        session_factory.remove()


@bp.app_errorhandler(LoginRequired)
def handle_login_required(exc):
    login_endpoint = "admin.login" if request.blueprint == "admin" else "main.login"
    next_url = request.path if request.method == "GET" else url_for("main.index")
    return redirect(url_for(login_endpoint, next=next_url))


@bp.app_errorhandler(TrackerError)
def handle_tracker_error(exc: TrackerError):
    if isinstance(exc, ValidationError):
        logger.info("request.invalid", path=request.path, fields=sorted(exc.errors))
    elif exc.status_code >= 500:
        logger.warning("request.storage_fault", path=request.path)
    return jsonify(exc.to_dict()), exc.status_code


@bp.app_errorhandler(Exception)
def handle_unexpected(exc):
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("request.unhandled", path=request.path)
    return jsonify({"error": "Internal Server Error"}), 500


@bp.route("/login")
def login():
    if g.identity.is_authenticated:
        return redirect(url_for("main.index"))
    return jsonify({"form": "login", "fields": ["username", "password"]})


@bp.route("/register")
def register():
    if g.identity.is_authenticated:
        return redirect(url_for("main.index"))
    return jsonify({"form": "register", "fields": ["username", "password"]})


@bp.post("/login")
def do_login():
    with get_db_session() as db_session:
        user = accounts.authenticate(db_session, form_data(), portal=accounts.PORTAL_USER)
        identity.sign_in(session, user)
    session.permanent = True
    return redirect(safe_next("main.index"))


@bp.post("/register")
def do_register():
    with get_db_session() as db_session:
        user = accounts.register(db_session, form_data())
        identity.sign_in(session, user)
        payload = UserView.model_validate(user).model_dump(mode="json")
    session.permanent = True
    return jsonify({"success": True, "user": payload}), 201


@bp.post("/logout")
def logout():
    identity.sign_out(session)
    return redirect(url_for("main.login"))


@bp.route("/")
def index():
    with get_db_session() as db_session:
        view = dashboards.home_summary(
            db_session, g.identity, recent_limit=settings().recent_limit
        )
    return jsonify(view.model_dump(mode="json"))


@bp.route("/dashboard")
def dashboard():
    with get_db_session() as db_session:
        view = dashboards.dashboard(db_session, g.identity, recent_limit=settings().recent_limit)
    return jsonify(view.model_dump(mode="json"))


@bp.route("/menus")
def menus():
    user_id = current_user_id()
    with get_db_session() as db_session:
        items = menus_for(db_session, user_id)
    return jsonify([item.model_dump() for item in items])


@bp.route("/expenses")
def expenses_list():
    query = parse_form(DateRangeQuery, request.args)
    scope = scope_for(g.identity, query.admin_view)
    with get_db_session() as db_session:
        items = ExpenseRepository(db_session).list_scoped(scope)
        payload = [ExpenseView.model_validate(e).model_dump(mode="json") for e in items]
    return jsonify(payload)


@bp.post("/expenses/new")
def expenses_new():
    user_id = current_user_id()
    with get_db_session() as db_session:
        expense = ExpenseRepository(db_session).create(user_id, form_data())
        payload = ExpenseView.model_validate(expense).model_dump(mode="json")
    return jsonify({"success": True, "expense": payload}), 201


@bp.route("/expenses/<int:expense_id>")
def expenses_detail(expense_id: int):
    with get_db_session() as db_session:
        expense = ExpenseRepository(db_session).get(expense_id, scope_for(g.identity))
        payload = ExpenseView.model_validate(expense).model_dump(mode="json")
    return jsonify(payload)


@bp.post("/expenses/<int:expense_id>/edit")
def expenses_edit(expense_id: int):
    with get_db_session() as db_session:
        expense = ExpenseRepository(db_session).update(
            expense_id, form_data(), scope_for(g.identity)
        )
        payload = ExpenseView.model_validate(expense).model_dump(mode="json")
    return jsonify({"success": True, "expense": payload})


@bp.post("/expenses/<int:expense_id>/delete")
def expenses_delete(expense_id: int):
    with get_db_session() as db_session:
        deleted = ExpenseRepository(db_session).delete(expense_id, scope_for(g.identity))
    return jsonify({"success": True, "deleted": deleted})


@bp.route("/expenses/graph")
def expenses_graph():
    query = parse_form(DateRangeQuery, request.args)
    with get_db_session() as db_session:
        view = dashboards.expense_graph(
            db_session,
            g.identity,
            query.start_date,
            query.end_date,
            admin_view=query.admin_view,
            months=settings().graph_default_months,
        )
    return jsonify(view.model_dump(mode="json"))


@bp.route("/expenses/export")
def expenses_export():
    query = parse_form(DateRangeQuery, request.args)
    scope = scope_for(g.identity, query.admin_view)
    start, end = normalize_date_range(
        query.start_date, query.end_date, months=settings().graph_default_months
    )
    with get_db_session() as db_session:
        items = ExpenseRepository(db_session).list_scoped(scope, (start, end))
        content = export_workbook(items)

    filename = f"expenses_{start.strftime('%Y%m%d')}-{end.strftime('%Y%m%d')}.xlsx"
    logger.info("expense.exported", rows=len(items), user_id=g.identity.user_id)
    return send_file(
        BytesIO(content),
        mimetype=XLSX_MIMETYPE,
        as_attachment=True,
        download_name=filename,
    )


@bp.post("/profile/password")
def update_password():
    user_id = current_user_id()
    with get_db_session() as db_session:
        accounts.change_password(db_session, user_id, form_data())
    return jsonify({"success": True})


@bp.route("/health")
def health():
    with get_db_session() as db_session:
        try:
            db_session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StorageFault() from exc
    return jsonify({"status": "ok", "date": date.today().isoformat()})
