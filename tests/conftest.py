"""Shared fixtures: an app on a temporary SQLite file, a test client and DB helpers."""

import pytest
from sqlalchemy import select

from models import ROLE_ADMIN, SUPERADMIN_USERNAME, User, UserRole

from expense_web import accounts, create_app, identity
from expense_web.config import Settings
from expense_web.provisioning import ensure_role

SUPERADMIN_PASSWORD = "SuperSecret123"
DEFAULT_PASSWORD = "secret123"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        secret_key="test-secret-key",
        superadmin_password=SUPERADMIN_PASSWORD,
        log_level="WARNING",
        log_json=False,
    )


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config["TESTING"] = True
    yield app
    app.config["SessionFactory"].remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    """A session independent of the request-scoped one."""
    session = app.config["SessionFactory"].session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_maker(app):
    return app.config["SessionFactory"].session_factory


@pytest.fixture
def make_user(db):
    def _make(username, password=DEFAULT_PASSWORD, admin=False):
        user = accounts.register(db, {"username": username, "password": password})
        if admin:
            role = ensure_role(db, ROLE_ADMIN)
            db.add(UserRole(user_id=user.id, role_id=role.id))
            db.commit()
        return db.get(User, user.id)

    return _make


@pytest.fixture
def identity_of():
    """Resolve an Identity the same way a request would, from a signed-in session."""

    def _identity(user):
        return identity.sign_in({}, user)

    return _identity


@pytest.fixture
def superadmin(db):
    return db.execute(select(User).where(User.username == SUPERADMIN_USERNAME)).scalar_one()


@pytest.fixture
def login(client):
    def _login(username, password=DEFAULT_PASSWORD, portal="user"):
        path = "/admin/login" if portal == "admin" else "/login"
        return client.post(path, data={"username": username, "password": password})

    return _login
