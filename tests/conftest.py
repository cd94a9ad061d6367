"""
Shared pytest fixtures for the authorization workflow engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - directory: one committed active user per role
    - pago_matrix: two overlapping "pago" rules (supervisor + gerente)
    - headers: builds the X-User-Id header for API calls
"""

import pytest

from app import create_app
from app.models import db as _db


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


def _make_user(role, *, email=None, full_name=None, is_active=True):
    from app.models.auth import User
    u = User(
        email=email or f"{role}@example.com",
        full_name=full_name or role.title(),
        role=role,
        is_active=is_active,
    )
    _db.session.add(u)
    _db.session.flush()
    return u


def _make_rule(workflow_type, level, min_amount=None, max_amount=None, **kw):
    from app.models.authorization import AuthorizationMatrixRule
    r = AuthorizationMatrixRule(
        workflow_type=workflow_type,
        required_level=level,
        min_amount=min_amount,
        max_amount=max_amount,
        escalation_hours=kw.get("escalation_hours", 24),
        requires_sequential=kw.get("requires_sequential", True),
        is_active=kw.get("is_active", True),
    )
    _db.session.add(r)
    _db.session.flush()
    return r


@pytest.fixture()
def make_user():
    """Factory: make_user("gerente", email=...) -> flushed User."""
    return _make_user


@pytest.fixture()
def make_rule():
    """Factory: make_rule("pago", "gerente", 0, 50000) -> flushed rule."""
    return _make_rule


@pytest.fixture()
def directory():
    """One committed active user per role, keyed by role name.

    Created in escalation-friendly order: the supervisor has a lower id
    than the admin, so it is the first escalation candidate.
    """
    users = {}
    for role in ("operativo", "supervisor", "gerente", "director", "ejecutivo", "admin"):
        users[role] = _make_user(role)
    _db.session.commit()
    return users


@pytest.fixture()
def pago_matrix():
    """Overlapping pago rules: 10 000 needs supervisor then gerente."""
    rules = [
        _make_rule("pago", "gerente", 0, 200000),
        _make_rule("pago", "supervisor", 0, 50000),
    ]
    _db.session.commit()
    return rules


@pytest.fixture()
def headers():
    def _headers(user):
        uid = user if isinstance(user, int) else user.id
        return {"X-User-Id": str(uid)}
    return _headers
