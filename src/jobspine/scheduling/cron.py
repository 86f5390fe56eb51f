"""Cron evaluation using croniter.

``next_occurrence(expr, after)`` is a pure function: the next instant
strictly after ``after`` that matches ``expr``, evaluated in UTC.

Five-field expressions are standard cron (``min hour dom mon dow``).
Six-field expressions carry seconds FIRST (``sec min hour dom mon dow``);
croniter expects the seconds field last, so the field is rotated before
parsing.

Tags:
    jobspine, scheduling, cron, croniter
"""

from __future__ import annotations

from datetime import datetime

from croniter import croniter

from jobspine.core.errors import InvalidCronExpressionError
from jobspine.core.timestamps import ensure_utc


def _to_croniter_format(expression: str) -> str:
    fields = expression.split()
    if len(fields) == 6:
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


def validate_cron_expression(expression: str) -> str:
    """Return the normalised expression or raise InvalidCronExpressionError."""
    if not expression or not expression.strip():
        raise InvalidCronExpressionError(expression or "")
    fields = expression.split()
    if len(fields) not in (5, 6):
        raise InvalidCronExpressionError(expression)
    if not croniter.is_valid(_to_croniter_format(expression)):
        raise InvalidCronExpressionError(expression)
    return " ".join(fields)


def next_occurrence(expression: str, after: datetime) -> datetime:
    """Next occurrence of ``expression`` strictly after ``after`` (UTC).

    Raises:
        InvalidCronExpressionError: If the expression cannot be parsed.
    """
    validate_cron_expression(expression)
    start = ensure_utc(after)
    try:
        itr = croniter(_to_croniter_format(expression), start)
        nxt = itr.get_next(datetime)
    except (ValueError, KeyError) as e:
        raise InvalidCronExpressionError(expression, cause=e) from e
    nxt = ensure_utc(nxt)
    # croniter truncates sub-second precision of the start time, so a start
    # at e.g. 10:00:00.5 could yield 10:00:00 for a per-second schedule.
    while nxt <= start:
        nxt = ensure_utc(itr.get_next(datetime))
    return nxt
