"""Shared helpers for blueprints and services.

get_or_404:          tuple-return lookup (NOT abort), ERR_NOT_FOUND body
parse_date:          ISO or DD.MM.YYYY; None on bad input
parse_int_list:      id lists from JSON bodies
db_commit_or_error:  commit with uniform 409/500 error responses
"""
import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError, OperationalError

from app.models import db
from app.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def get_or_404(model, pk, label=None):
    """Fetch a row by primary key.

    Returns ``(obj, None)`` or ``(None, error_response)``:

        template, err = get_or_404(NotificationTemplate, tid, "Notification template")
        if err:
            return err
    """
    obj = db.session.get(model, pk)
    if obj is None:
        return None, api_error(E.NOT_FOUND, f"{label or model.__name__} {pk} not found")
    return obj, None


def parse_date(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    for parse in (date.fromisoformat, lambda s: datetime.fromisoformat(s).date(),
                  lambda s: datetime.strptime(s, "%d.%m.%Y").date()):
        try:
            return parse(text)
        except ValueError:
            continue
    return None


def parse_int_list(values):
    """Coerce a JSON list of ids into ints, dropping anything non-numeric."""
    if not isinstance(values, (list, tuple)):
        return []
    result = []
    for v in values:
        try:
            result.append(int(v))
        except (TypeError, ValueError):
            continue
    return result


def db_commit_or_error():
    """Commit the session; on failure roll back and return an error response.

    IntegrityError   → 409 ERR_CONFLICT_DUPLICATE
    OperationalError → 500 ERR_INTERNAL
    """
    try:
        db.session.commit()
        return None
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("Integrity error on commit: %s", exc.orig)
        return api_error(E.CONFLICT_DUPLICATE, "Duplicate or constraint violation")
    except OperationalError:
        db.session.rollback()
        logger.exception("Database operational error on commit")
        return api_error(E.INTERNAL, "Database error")
