"""
User Service — user directory lookups used by the workflow engine.
"""

from decimal import Decimal

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.auth import ROLES, User


def get_user(user_id: int) -> User:
    """Return the user or raise NotFoundError."""
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def find_user(user_id: int | None) -> User | None:
    if user_id is None:
        return None
    return db.session.get(User, user_id)


def get_users_by_role(roles: list[str], *, active_only: bool = True) -> list[User]:
    """Users holding any of ``roles``, ordered by id."""
    if not roles:
        return []
    stmt = select(User).where(User.role.in_(list(roles)))
    if active_only:
        stmt = stmt.where(User.is_active == True)  # noqa: E712
    return list(db.session.execute(stmt.order_by(User.id)).scalars().all())


def first_user_at_level(level: str) -> User | None:
    """Default assignee for a step: the lowest-id active user whose role equals ``level``."""
    users = get_users_by_role([level])
    return users[0] if users else None


def create_user(data: dict) -> User:
    """Create a directory entry. Caller commits."""
    errors = {}
    email = (data.get("email") or "").strip()
    try:
        email = validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError as exc:
        errors["email"] = str(exc)

    full_name = (data.get("full_name") or "").strip()
    if not full_name:
        errors["full_name"] = "full_name is required"

    role = data.get("role", "operativo")
    if role not in ROLES:
        errors["role"] = f"role must be one of {sorted(ROLES)}"

    limit = data.get("authorization_limit")
    if limit is not None:
        try:
            limit = Decimal(str(limit))
        except ArithmeticError:
            errors["authorization_limit"] = "authorization_limit must be a number"

    if errors:
        raise ValidationError("Invalid user", details=errors)

    if db.session.execute(select(User.id).where(User.email == email)).first():
        raise ConflictError(f"User with email={email!r} already exists", resource="User")

    user = User(
        email=email,
        full_name=full_name,
        role=role,
        department=data.get("department"),
        authorization_limit=limit,
        is_active=data.get("is_active", True),
    )
    db.session.add(user)
    db.session.flush()
    return user
