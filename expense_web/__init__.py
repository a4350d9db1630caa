"""Flask 应用初始化与数据库 Schema 管理。"""

from datetime import timedelta
from typing import Optional

import click
from flask import Flask
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import NullPool

from models import Base

from expense_web.config import Settings, get_data_path, get_settings
from expense_web.db import get_db_session
from expense_web.log import configure_logging, get_logger

logger = get_logger(__name__)


def _engine_for(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, poolclass=NullPool, future=True, connect_args=connect_args)


def run_seed(app: Flask):
    from expense_web.provisioning import seed

    settings = app.config["SETTINGS"]
    with get_db_session(app) as db_session:
        return seed(db_session, settings.superadmin_password)


def create_app(settings: Optional[Settings] = None) -> Flask:
    """构建 Flask 应用并初始化数据库、蓝图与初始数据。"""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    data_dir = get_data_path()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = settings.resolve_secret_key(data_dir)
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(
        minutes=settings.session_lifetime_minutes
    )

    database_url = settings.resolve_database_url(data_dir)
    engine = _engine_for(database_url)
    Base.metadata.create_all(engine)
    logger.info("app.database_ready", url=engine.url.render_as_string(hide_password=True))

    session_factory = scoped_session(sessionmaker(bind=engine))
    app.config["SessionFactory"] = session_factory
    app.config["SETTINGS"] = settings
    app.config["DATA_DIR"] = data_dir

    from expense_web.admin import bp as admin_bp
    from expense_web.routes import bp as main_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(admin_bp)

    @app.cli.command("seed")
    def seed_command():
        """重新执行角色、菜单与超级管理员的初始化。"""
        report = run_seed(app)
        click.echo(
            f"roles={report.roles_created} superadmin_created={report.superadmin_created} "
            f"menus={report.menus_created} grants={report.menus_granted} "
            f"repairs={report.superadmin_repairs}"
        )

    if settings.seed_on_startup:
        run_seed(app)
        session_factory.remove()

    return app
