"""Shared utility functions used by blueprints and services.

get_or_404:       tuple-return pattern, NOT abort
parse_datetime:   ISO date/datetime input -> tz-aware UTC datetime
parse_amount:     JSON number/string -> Decimal
as_utc:           normalise SQLite naive datetimes to UTC-aware
"""
import logging
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation

from flask import jsonify, request

from app.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a model instance by primary key or return a 404 error tuple.

    - Success: (obj, None)
    - Failure: (None, (jsonify_response, 404))

        obj, err = get_or_404(AuthorityDelegation, did)
        if err:
            return err
    """
    label = label or model.__name__
    obj = db.session.get(model, pk)
    if not obj:
        return None, (jsonify({"error": f"{label} not found"}), 404)
    return obj, None


def as_utc(dt):
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    Every comparison against ``datetime.now(timezone.utc)`` goes through here.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse an ISO date or datetime string into a UTC-aware datetime.

    Raises ValueError on bad input. A bare date becomes midnight UTC.
    A trailing ``Z`` is accepted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"Invalid datetime: {value!r}") from exc


def parse_amount(value, field="amount"):
    """Parse a monetary amount into a Decimal. Raises ValueError on bad input."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"{field} must be a number") from exc
    if not amount.is_finite():
        raise ValueError(f"{field} must be a finite number")
    return amount


def current_user_id():
    """Acting user id from the ``X-User-Id`` header, or None.

    Authentication is handled upstream; this only reads the identity the
    gateway forwards.
    """
    raw = request.headers.get("X-User-Id", "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None
