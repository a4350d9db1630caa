"""Tests for identity resolution and access scoping."""

from datetime import date

import pytest

from models import Expense

from expense_web import identity
from expense_web.errors import AccessDenied, LoginRequired, NotFoundError
from expense_web.identity import Identity, Tier
from expense_web.policy import (
    has_full_visibility,
    require_admin,
    require_superadmin,
    scope_for,
)
from expense_web.repository import ExpenseRepository


def expense_fields(description="Lunch", amount="12.50", category="Food", day=None):
    return {
        "description": description,
        "amount": amount,
        "category": category,
        "date": (day or date(2024, 1, 10)).isoformat(),
    }


class TestResolve:
    """Session to Identity resolution."""

    def test_empty_session_is_anonymous(self):
        resolved = identity.resolve({})
        assert not resolved.is_authenticated
        assert resolved.tier is Tier.ANONYMOUS

    def test_user_id_memoized_from_principal(self):
        """A missing user_id is derived from the principal and written back."""
        session = {"principal": {"sub": "7", "name": "alice", "roles": ["User"]}}
        resolved = identity.resolve(session)
        assert resolved.user_id == 7
        assert session["user_id"] == 7
        assert resolved.tier is Tier.USER

    def test_cached_user_id_wins(self):
        session = {"principal": {"sub": 7, "name": "alice", "roles": []}, "user_id": 3}
        assert identity.resolve(session).user_id == 3

    def test_malformed_principal_is_anonymous(self):
        """Garbage in the session never raises."""
        assert identity.resolve({"principal": "nonsense"}) == Identity.anonymous()
        resolved = identity.resolve({"principal": {"sub": "x", "roles": "Admin"}})
        assert resolved.user_id is None
        assert resolved.roles == frozenset()
        assert not resolved.is_admin

    def test_superadmin_name_is_case_insensitive(self):
        resolved = identity.resolve({"principal": {"sub": 1, "name": "SuperAdmin", "roles": []}})
        assert resolved.is_superadmin
        assert resolved.tier is Tier.SUPERADMIN

    def test_admin_role(self):
        resolved = identity.resolve({"principal": {"sub": 2, "name": "bob", "roles": ["Admin"]}})
        assert resolved.is_admin
        assert resolved.tier is Tier.ADMIN

    def test_sign_in_and_out(self, make_user):
        user = make_user("carol")
        session = {"stale": True}
        resolved = identity.sign_in(session, user)
        assert "stale" not in session
        assert resolved.user_id == user.id
        assert resolved.roles == frozenset({"User"})
        identity.sign_out(session)
        assert session == {}

    def test_is_current(self, db, make_user):
        """A signed-in identity stays current until the account is deleted or revoked."""
        user = make_user("dave")
        resolved = identity.sign_in({}, user)
        assert resolved.session_version == 1
        assert identity.is_current(db, resolved)

        user.invalidate_sessions()
        db.commit()
        assert not identity.is_current(db, resolved)
        assert not identity.is_current(db, Identity(username="dave"))

    def test_is_current_rejects_other_account_with_same_id(self, db, make_user):
        user = make_user("erin")
        forged = identity.resolve(
            {"principal": {"sub": user.id, "name": "mallory", "roles": [], "ver": 1}}
        )
        assert not identity.is_current(db, forged)

    def test_refresh_only_touches_own_session(self, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        session = {}
        identity.sign_in(session, alice)
        identity.refresh_principal(session, bob)
        assert session["principal"]["name"] == "alice"


class TestTierRules:
    """The single full-visibility rule and tier guards."""

    def test_full_visibility(self):
        user = Identity(user_id=1, username="alice", roles=frozenset({"User"}))
        admin = Identity(user_id=2, username="bob", roles=frozenset({"Admin"}), is_admin=True)
        root = Identity(user_id=3, username="superadmin", is_superadmin=True)

        assert not has_full_visibility(user)
        assert has_full_visibility(admin)
        assert not has_full_visibility(admin, admin_view=False)
        assert has_full_visibility(root, admin_view=False)

    def test_scope_without_user_id_requires_login(self):
        """A non-privileged identity without a user id never gets an unfiltered query."""
        with pytest.raises(LoginRequired):
            scope_for(Identity(username="ghost"))

    def test_guards(self):
        user = Identity(user_id=1, username="alice")
        admin = Identity(user_id=2, username="bob", is_admin=True)

        with pytest.raises(LoginRequired):
            require_admin(Identity.anonymous())
        with pytest.raises(AccessDenied):
            require_admin(user)
        assert require_admin(admin) is admin
        with pytest.raises(AccessDenied):
            require_superadmin(admin)


class TestScopedAccess:
    """Cross-user isolation through the repository."""

    def test_users_only_see_their_own(self, db, make_user, identity_of):
        alice = identity_of(make_user("alice"))
        bob = identity_of(make_user("bob"))
        repo = ExpenseRepository(db)
        repo.create(alice.user_id, expense_fields("Alice lunch"))
        bob_expense = repo.create(bob.user_id, expense_fields("Bob taxi", category="Travel"))

        visible = repo.list_scoped(scope_for(alice))
        assert [e.description for e in visible] == ["Alice lunch"]

        with pytest.raises(NotFoundError):
            repo.get(bob_expense.id, scope_for(alice))
        with pytest.raises(NotFoundError):
            repo.update(bob_expense.id, expense_fields("hijack"), scope_for(alice))
        assert repo.delete(bob_expense.id, scope_for(alice)) is False
        assert db.get(Expense, bob_expense.id).description == "Bob taxi"

    def test_superadmin_sees_everything(self, db, make_user, identity_of, superadmin):
        alice = identity_of(make_user("alice"))
        bob = identity_of(make_user("bob"))
        repo = ExpenseRepository(db)
        repo.create(alice.user_id, expense_fields())
        repo.create(bob.user_id, expense_fields())

        root = identity_of(superadmin)
        assert len(repo.list_scoped(scope_for(root))) == 2
        assert len(repo.list_scoped(scope_for(root, admin_view=False))) == 2

    def test_admin_personal_view(self, db, make_user, identity_of):
        """admin_view=False narrows an admin back to their own expenses."""
        admin = identity_of(make_user("bob", admin=True))
        alice = identity_of(make_user("alice"))
        repo = ExpenseRepository(db)
        repo.create(alice.user_id, expense_fields("Alice"))
        repo.create(admin.user_id, expense_fields("Bob"))

        assert len(repo.list_scoped(scope_for(admin))) == 2
        own = repo.list_scoped(scope_for(admin, admin_view=False))
        assert [e.description for e in own] == ["Bob"]
