"""Tests for provisioning, accounts and menu administration."""

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from models import ROLE_ADMIN, Menu, Role, User, UserMenu, UserRole

from expense_web import accounts, identity, menus, provisioning
from expense_web.errors import AccessDenied, NotFoundError, StorageFault, ValidationError
from expense_web.provisioning import DEFAULT_MENUS

from conftest import DEFAULT_PASSWORD, SUPERADMIN_PASSWORD


def count(db, model):
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def menu_titles(db, user_id):
    return [item.title for item in menus.menus_for(db, user_id)]


class TestProvisioning:
    """Idempotent seeding."""

    def test_initial_seed(self, db, superadmin):
        assert sorted(db.execute(select(Role.role_name)).scalars()) == ["Admin", "User"]
        assert count(db, Menu) == len(DEFAULT_MENUS)
        assert superadmin.role_names == ["Admin", "User"]
        assert len(menu_titles(db, superadmin.id)) == len(DEFAULT_MENUS)
        assert superadmin.check_password(SUPERADMIN_PASSWORD)

    def test_second_run_changes_nothing(self, db, make_user):
        make_user("alice")
        before = (count(db, Role), count(db, User), count(db, Menu), count(db, UserMenu), count(db, UserRole))

        report = provisioning.seed(db, SUPERADMIN_PASSWORD)

        assert not report.changed
        after = (count(db, Role), count(db, User), count(db, Menu), count(db, UserMenu), count(db, UserRole))
        assert after == before

    def test_existing_superadmin_password_is_kept(self, db, superadmin):
        provisioning.seed(db, "a-different-password")
        db.refresh(superadmin)
        assert superadmin.check_password(SUPERADMIN_PASSWORD)

    def test_superadmin_repaired(self, db, superadmin):
        """A lost role or menu grant is restored on the next run."""
        admin_role = db.execute(select(Role).where(Role.role_name == ROLE_ADMIN)).scalar_one()
        db.execute(
            delete(UserRole).where(
                UserRole.user_id == superadmin.id, UserRole.role_id == admin_role.id
            )
        )
        db.execute(delete(UserMenu).where(UserMenu.user_id == superadmin.id))
        db.commit()

        report = provisioning.seed(db, SUPERADMIN_PASSWORD)

        assert report.superadmin_repairs >= 1
        db.expire_all()
        assert db.get(User, superadmin.id).role_names == ["Admin", "User"]
        assert len(menu_titles(db, superadmin.id)) == len(DEFAULT_MENUS)

    def test_custom_menu_granted_to_superadmin(self, db, superadmin):
        menus.create_menu(db, {"title": "Reports", "url": "/reports"})
        provisioning.seed(db, SUPERADMIN_PASSWORD)
        assert "Reports" in menu_titles(db, superadmin.id)


class TestRegistration:
    """Registration and login."""

    def test_new_user_gets_user_role_and_menus(self, db, make_user):
        user = make_user("alice")
        assert user.role_names == ["User"]
        assert menu_titles(db, user.id) == [
            "Add Expense",
            "Dashboard",
            "Expense Graph",
            "View Expenses",
        ]

    def test_duplicate_username(self, db, make_user):
        """The second registration fails and the first account is untouched."""
        first = make_user("alice")
        with pytest.raises(ValidationError) as excinfo:
            accounts.register(db, {"username": "alice", "password": "other-password"})
        assert excinfo.value.errors == {"username": ["Username is already taken."]}

        db.expire_all()
        stored = db.execute(select(User).where(User.username == "alice")).scalars().all()
        assert len(stored) == 1
        assert stored[0].id == first.id
        assert stored[0].check_password(DEFAULT_PASSWORD)

    def test_reserved_name_cannot_register(self, db):
        with pytest.raises(ValidationError):
            accounts.register(db, {"username": "SuperAdmin", "password": "secret123"})

    def test_case_insensitive_race_hits_unique_index(self, db, make_user, monkeypatch):
        """When the pre-check misses a concurrent insert, the index still rejects it."""
        make_user("alice")
        monkeypatch.setattr(accounts, "_username_exists", lambda *args, **kwargs: False)
        with pytest.raises(ValidationError) as excinfo:
            accounts.register(db, {"username": "ALICE", "password": "other-password"})
        assert excinfo.value.errors == {"username": ["Username is already taken."]}
        assert count(db, User) == 2

    def test_deleted_ids_are_not_reused(self, db, make_user, identity_of, superadmin):
        alice_id = make_user("alice").id
        accounts.delete_user(db, identity_of(superadmin), alice_id)
        assert make_user("bob").id > alice_id

    def test_short_password(self, db):
        with pytest.raises(ValidationError) as excinfo:
            accounts.register(db, {"username": "dave", "password": "123"})
        assert excinfo.value.errors["password"] == ["Password must be at least 6 characters"]

    def test_wrong_password(self, db, make_user):
        make_user("alice")
        with pytest.raises(ValidationError) as excinfo:
            accounts.authenticate(db, {"username": "alice", "password": "nope-nope"})
        assert excinfo.value.errors["__all__"] == ["Invalid username or password."]

    def test_portals(self, db, make_user):
        """The superadmin logs in only through the admin portal, everyone else only through the user portal."""
        make_user("alice")
        with pytest.raises(ValidationError):
            accounts.authenticate(
                db, {"username": "superadmin", "password": SUPERADMIN_PASSWORD}, portal="user"
            )
        with pytest.raises(ValidationError):
            accounts.authenticate(
                db, {"username": "alice", "password": DEFAULT_PASSWORD}, portal="admin"
            )
        user = accounts.authenticate(
            db, {"username": "superadmin", "password": SUPERADMIN_PASSWORD}, portal="admin"
        )
        assert user.is_superadmin

    def test_change_password(self, db, make_user):
        user = make_user("alice")
        with pytest.raises(ValidationError):
            accounts.change_password(
                db, user.id, {"current_password": "wrong-one", "new_password": "newsecret"}
            )
        accounts.change_password(
            db, user.id, {"current_password": DEFAULT_PASSWORD, "new_password": "newsecret"}
        )
        assert accounts.authenticate(db, {"username": "alice", "password": "newsecret"})


class TestUserAdministration:
    """Admin and superadmin operations on accounts."""

    def test_superadmin_hidden_from_admins(self, db, make_user, identity_of, superadmin):
        admin = identity_of(make_user("bob", admin=True))
        names = [u.username for u in accounts.list_users(db, admin)]
        assert "superadmin" not in names
        with pytest.raises(NotFoundError):
            accounts.get_user(db, admin, superadmin.id)

        root = identity_of(superadmin)
        assert "superadmin" in [u.username for u in accounts.list_users(db, root)]

    def test_assign_and_remove_admin(self, db, make_user, identity_of, superadmin):
        alice = make_user("alice")
        root = identity_of(superadmin)

        assert accounts.assign_admin_role(db, root, alice.id) is True
        assert accounts.assign_admin_role(db, root, alice.id) is False
        db.expire_all()
        assert "Manage Users" in menu_titles(db, alice.id)

        assert accounts.remove_admin_role(db, root, alice.id) is True
        assert accounts.remove_admin_role(db, root, alice.id) is False
        db.expire_all()
        assert db.get(User, alice.id).role_names == ["User"]

    def test_admin_creates_user(self, db, make_user, identity_of):
        admin = identity_of(make_user("bob", admin=True))
        dan = accounts.create_user(db, admin, {"username": "dan", "password": "secret123"})
        assert dan.role_names == ["User"]
        assert "Dashboard" in menu_titles(db, dan.id)

        with pytest.raises(ValidationError):
            accounts.create_user(db, admin, {"username": "superadmin", "password": "secret123"})
        with pytest.raises(AccessDenied):
            accounts.create_user(
                db, identity_of(make_user("alice")), {"username": "eve", "password": "secret123"}
            )

    def test_role_changes_revoke_sessions(self, db, make_user, identity_of, superadmin):
        alice = make_user("alice")
        before = identity_of(alice)
        root = identity_of(superadmin)

        accounts.assign_admin_role(db, root, alice.id)
        db.expire_all()
        assert not identity.is_current(db, before)

        promoted = identity_of(db.get(User, alice.id))
        assert identity.is_current(db, promoted)
        accounts.remove_admin_role(db, root, alice.id)
        db.expire_all()
        assert not identity.is_current(db, promoted)

    def test_assign_admin_storage_failure(self, db, make_user, identity_of, superadmin, monkeypatch):
        """A failed flush rolls back and surfaces as a retryable fault."""
        alice = make_user("alice")
        original_flush = db.flush

        def failing_flush(*args, **kwargs):
            if db.new:
                raise IntegrityError("INSERT INTO user_roles", {}, Exception("constraint failed"))
            return original_flush(*args, **kwargs)

        monkeypatch.setattr(db, "flush", failing_flush)
        with pytest.raises(StorageFault):
            accounts.assign_admin_role(db, identity_of(superadmin), alice.id)

        monkeypatch.undo()
        db.expire_all()
        assert db.get(User, alice.id).role_names == ["User"]
        assert "Manage Users" not in menu_titles(db, alice.id)

    def test_only_superadmin_manages_roles(self, db, make_user, identity_of, superadmin):
        admin = identity_of(make_user("bob", admin=True))
        alice = make_user("alice")
        with pytest.raises(AccessDenied):
            accounts.assign_admin_role(db, admin, alice.id)
        with pytest.raises(AccessDenied):
            accounts.reset_password(db, admin, alice.id, {"new_password": "whatever1"})
        with pytest.raises(AccessDenied):
            accounts.reset_password(
                db, identity_of(superadmin), superadmin.id, {"new_password": "whatever1"}
            )

    def test_delete_user(self, db, make_user, identity_of, superadmin):
        admin = identity_of(make_user("bob", admin=True))
        alice_id = make_user("alice").id

        assert accounts.delete_user(db, admin, alice_id) is True
        assert accounts.delete_user(db, admin, alice_id) is False
        assert db.execute(select(UserMenu).where(UserMenu.user_id == alice_id)).first() is None

        with pytest.raises(AccessDenied):
            accounts.delete_user(db, admin, superadmin.id)
        with pytest.raises(AccessDenied):
            accounts.delete_user(db, identity_of(superadmin), superadmin.id)

    def test_rename_to_taken_name(self, db, make_user, identity_of):
        admin = identity_of(make_user("bob", admin=True))
        make_user("alice")
        carol = make_user("carol")
        with pytest.raises(ValidationError):
            accounts.update_username(db, admin, carol.id, {"username": "Alice"})
        renamed = accounts.update_username(db, admin, carol.id, {"username": "caroline"})
        assert renamed.username == "caroline"


class TestMenus:
    """Menu administration and role assignment."""

    def test_duplicate_title_rejected(self, db):
        with pytest.raises(ValidationError) as excinfo:
            menus.create_menu(db, {"title": "Dashboard", "url": "/elsewhere"})
        assert "title" in excinfo.value.errors

    def test_assign_menus_to_role_replaces_grants(self, db, make_user):
        alice = make_user("alice")
        user_role = db.execute(select(Role).where(Role.role_name == "User")).scalar_one()
        dashboard = db.execute(select(Menu).where(Menu.title == "Dashboard")).scalar_one()

        affected = menus.assign_menus_to_role(db, user_role.id, [dashboard.id])

        assert affected >= 1
        assert menu_titles(db, alice.id) == ["Dashboard"]

    def test_assign_to_role_without_users(self, db):
        role = Role(role_name="Auditor")
        db.add(role)
        db.commit()
        assert menus.assign_menus_to_role(db, role.id, []) == 0

    def test_assign_unknown_menu(self, db):
        user_role = db.execute(select(Role).where(Role.role_name == "User")).scalar_one()
        with pytest.raises(ValidationError):
            menus.assign_menus_to_role(db, user_role.id, [9999])
        with pytest.raises(NotFoundError):
            menus.assign_menus_to_role(db, 9999, [])

    def test_delete_menu_is_idempotent(self, db, make_user):
        alice = make_user("alice")
        graph = db.execute(select(Menu).where(Menu.title == "Expense Graph")).scalar_one()
        assert menus.delete_menu(db, graph.id) is True
        assert menus.delete_menu(db, graph.id) is False
        assert "Expense Graph" not in menu_titles(db, alice.id)
