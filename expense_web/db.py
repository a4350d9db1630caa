import threading
from contextlib import contextmanager
from typing import Generator

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session as OrmSession

from expense_web.errors import StorageFault
from expense_web.log import get_logger

logger = get_logger(__name__)

db_write_lock = threading.RLock()


@contextmanager
def get_db_session(app=None) -> Generator[OrmSession, None, None]:
    """统一的 Session 上下文管理器，确保使用后关闭。"""
    flask_app = app or current_app
    session_factory = flask_app.config.get("SessionFactory")
    if session_factory is None:
        raise RuntimeError("SessionFactory 未初始化")

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def commit_or_fault(db_session: OrmSession, event: str, **context) -> None:
    """提交事务；失败时回滚并抛出可重试的 StorageFault。"""
    try:
        db_session.commit()
    except SQLAlchemyError as exc:
        db_session.rollback()
        logger.error(event, error=str(exc), **context)
        raise StorageFault() from exc
