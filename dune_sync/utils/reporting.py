"""
Reporting helpers (table or JSON) for pass results.

`print_rows` auto-selects the columns that carry data and produces a compact
table that fits CLI usage. JSON output is also supported for machine
consumption.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

log = logging.getLogger(__name__)

CANDIDATE_COLUMNS = [
    "kind",
    "key",
    "outcome",
    "mode",
    "remote_id",
    "full_name",
    "query_id",
    "cron_schedule",
    "status",
    "namespace",
    "name",
    "description",
    "columns",
    "exists",
    "credits_used",
    "credits_remaining",
    "queries_executed",
    "storage_bytes",
    "billing_period_start",
    "billing_period_end",
    "is_private",
    "reasons",
    "note",
    "error",
    "updated_at",
]
MANDATORY_COLUMNS = {"kind", "key", "outcome"}


def _normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """Shorten long error text. The fingerprint is only shown in JSON output."""
    r = dict(row)
    err = r.get("error")
    r["error"] = str(err).strip()[:160] if err else ""
    return r


def _present(v: Any) -> bool:
    return not (v is None or v == "" or v == [])


def _fmt(v: Any, col: str) -> str:
    if isinstance(v, bool):
        return "✓" if v else "✗"
    s = "" if v is None else str(v)
    if s == "":
        return "—"
    if col in ("note", "description", "columns") and len(s) > 60:
        return s[:57] + "..."
    return s


def print_rows(
    rows: List[Dict[str, Any]],
    fmt: str = "table",
    *,
    summary: Optional[Dict[str, int]] = None,
) -> None:
    """Render result rows as a table or JSON.

    Args:
        rows: Rows as produced by ``KeyResult.to_row``, or listing rows (views,
            datasets, usage, state records).
        fmt: Either ``"table"`` (default) or ``"json"``.
        summary: Optional ``outcome -> count`` mapping printed below the table.
    """
    if fmt == "json":
        payload: Any = rows if summary is None else {"results": rows, "summary": summary}
        print(json.dumps(payload, indent=2, default=str))
        return

    norm_rows = [_normalize_row(r) for r in rows]
    if not norm_rows:
        print("(no resources)")
        return

    mandatory = MANDATORY_COLUMNS if any("outcome" in r for r in norm_rows) else set()
    cols: List[str] = [
        c for c in CANDIDATE_COLUMNS
        if c in mandatory or any(_present(r.get(c)) for r in norm_rows)
    ]

    widths = {c: len(c) for c in cols}
    for r in norm_rows:
        for c in cols:
            widths[c] = max(widths[c], len(_fmt(r.get(c), c)))

    print("| " + " | ".join(c.ljust(widths[c]) for c in cols) + " |")
    print("| " + " | ".join("-" * widths[c] for c in cols) + " |")
    for r in norm_rows:
        print("| " + " | ".join(_fmt(r.get(c), c).ljust(widths[c]) for c in cols) + " |")

    if summary:
        print("summary: " + ", ".join(f"{k}={v}" for k, v in sorted(summary.items())))
    log.debug("Printed %d rows (%d columns)", len(norm_rows), len(cols))
