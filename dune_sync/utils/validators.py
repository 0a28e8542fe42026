"""
Declaration validators (cron expressions, references, required fields) and
usage date windows.

Everything here runs before the first remote call of a pass; any problem is
raised as :class:`ConfigurationError` and rejects the whole declaration set.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional, Tuple

from ..core.errors import ConfigurationError
from ..core.models import DeclarationSet, QueryDeclaration

# (name, min, max) for the five cron fields
_CRON_FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 7),
)
_CRON_NAMES = {
    3: {"JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"},
    4: {"SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"},
}
_CRON_ATOM = re.compile(r"^(\*|\d+|[A-Za-z]{3})(?:-(\d+|[A-Za-z]{3}))?(?:/(\d+))?$")


def _check_value(raw: str, idx: int, lo: int, hi: int, expr: str) -> None:
    if raw == "*":
        return
    if raw.isdigit():
        if not lo <= int(raw) <= hi:
            raise ConfigurationError(
                f"Invalid cron expression '{expr}': {_CRON_FIELDS[idx][0]} value {raw} out of range {lo}-{hi}"
            )
        return
    if raw.upper() not in _CRON_NAMES.get(idx, set()):
        raise ConfigurationError(f"Invalid cron expression '{expr}': unexpected '{raw}' in {_CRON_FIELDS[idx][0]}")


def validate_cron(expr: str) -> str:
    """Validate a 5-field cron expression and return it stripped.

    Raises:
        ConfigurationError: If the expression is empty or malformed.
    """
    if not isinstance(expr, str) or not expr.strip():
        raise ConfigurationError("cron expression is required")
    expr = expr.strip()
    fields = expr.split()
    if len(fields) != 5:
        raise ConfigurationError(f"Invalid cron expression '{expr}': expected 5 fields, got {len(fields)}")
    for idx, (field, (_, lo, hi)) in enumerate(zip(fields, _CRON_FIELDS)):
        for part in field.split(","):
            m = _CRON_ATOM.match(part)
            if not m:
                raise ConfigurationError(f"Invalid cron expression '{expr}': cannot parse '{part}'")
            start, end, step = m.groups()
            _check_value(start, idx, lo, hi, expr)
            if end is not None:
                if start == "*":
                    raise ConfigurationError(f"Invalid cron expression '{expr}': range cannot start with '*'")
                _check_value(end, idx, lo, hi, expr)
            if step is not None and int(step) == 0:
                raise ConfigurationError(f"Invalid cron expression '{expr}': step cannot be 0")
    return expr


def require_query_fields(decl: QueryDeclaration) -> None:
    """Ensure the fields needed by create/update are present."""
    missing: List[str] = []
    if not (decl.name or "").strip():
        missing.append("name")
    if not (decl.sql or "").strip():
        missing.append("sql")
    if missing:
        raise ConfigurationError(f"Query '{decl.key}' is missing required fields: {', '.join(missing)}")


def validate_declarations(decls: DeclarationSet) -> None:
    """Validate a whole declaration set before any remote call is made."""
    overlap = sorted(set(decls.queries) & set(decls.views))
    if overlap:
        raise ConfigurationError(f"Keys declared both as query and materialized view: {', '.join(overlap)}")

    for decl in decls.queries.values():
        require_query_fields(decl)

    for view in decls.views.values():
        if not view.query or view.query not in decls.queries:
            raise ConfigurationError(
                f"Materialized view '{view.key}' references unknown query '{view.query}'"
            )
        validate_cron(view.cron)


def validate_date_range(start: Optional[str], end: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Check optional ``YYYY-MM-DD`` bounds of a usage window.

    Raises:
        ConfigurationError: If a date is malformed or ``start`` is after ``end``.
    """
    parsed = []
    for label, value in (("start date", start), ("end date", end)):
        if not value:
            parsed.append(None)
            continue
        try:
            parsed.append(datetime.strptime(value.strip(), "%Y-%m-%d").date())
        except ValueError:
            raise ConfigurationError(f"Invalid {label} '{value}': expected YYYY-MM-DD") from None
    if parsed[0] and parsed[1] and parsed[0] > parsed[1]:
        raise ConfigurationError(f"Start date {start} is after end date {end}")
    return (start.strip() if start else None), (end.strip() if end else None)
