"""
Shared pytest fixtures for the Employee Request Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - seeded: Roles, permissions, event types and notification templates
    - make_user: Factory for users holding one or more roles
    - org: A small organisation (requestor + one holder per approval role)
"""

import pytest

from app import create_app
from app.models import db as _db
from app.services import dedup_guard


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        dedup_guard.reset()
        yield
        dedup_guard.reset()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def seeded():
    """Seed roles, permissions and notification templates."""
    from app.services.seed_service import seed_all
    return seed_all()


def _make_user(email, roles=(), *, full_name=None, department="Finance", status="active", staff_id=None):
    from sqlalchemy import select

    from app.models.auth import Role, User, UserRole

    user = User(
        email=email,
        full_name=full_name or (email.split("@")[0].replace(".", " ").title() if email else "No Email"),
        department=department,
        status=status,
        staff_id=staff_id,
    )
    _db.session.add(user)
    _db.session.flush()
    for role_name in roles:
        role = _db.session.execute(select(Role).where(Role.name == role_name)).scalar_one_or_none()
        if role is None:
            role = Role(name=role_name)
            _db.session.add(role)
            _db.session.flush()
        _db.session.add(UserRole(user_id=user.id, role_id=role.id))
    _db.session.commit()
    return user


@pytest.fixture()
def make_user():
    """Return the user factory: make_user(email, roles, department=..., status=...)."""
    return _make_user


@pytest.fixture()
def org(seeded):
    """One requestor plus one holder for every approval and admin role."""
    return {
        "requestor": _make_user("requestor@corp.test", ["Requestor"], full_name="Rita Requestor",
                                staff_id="S-100"),
        "focal": _make_user("focal@corp.test", ["Department Focal"], full_name="Fiona Focal"),
        "other_focal": _make_user("focal.ops@corp.test", ["Department Focal"], full_name="Oscar Focal",
                                  department="Operations"),
        "manager": _make_user("manager@corp.test", ["Line Manager"], full_name="Mark Manager",
                              department="Operations"),
        "hod": _make_user("hod@corp.test", ["HOD"], full_name="Helen Hod", department="Executive"),
        "ticketing": _make_user("tickets@corp.test", ["Ticketing Admin"], full_name="Tom Tickets",
                                department="Travel"),
        "claims_admin": _make_user("claims@corp.test", ["Claims Admin"], full_name="Cara Claims"),
        "finance_admin": _make_user("finance@corp.test", ["Finance Admin"], full_name="Fred Finance"),
        "visa_clerk": _make_user("visa@corp.test", ["Visa Clerk"], full_name="Vera Visa"),
    }


@pytest.fixture()
def submit(org):
    """Factory: submit(entity_type, **fields) → RequestEntity, created by the org requestor."""
    from app.services.workflow_state_machine import submit_new_request

    def _submit(entity_type="trf", notify=True, **fields):
        data = {"title": f"Test {entity_type} request", "department": "Finance"}
        data.update(fields)
        entity, _ = submit_new_request(entity_type, org["requestor"], data, notify=notify)
        return entity

    return _submit
