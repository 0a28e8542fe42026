"""
Desired-state document loader.

Parses the declarations YAML into an immutable :class:`DeclarationSet`:

    team: analytics
    queries:
      daily_count:
        name: Daily Count
        sql_file: queries/daily_count.sql   # or inline `sql:`
        private: true                       # or `visibility: public`
        query_id: 6612997                   # optional remembered id
    materialized_views:
      result_daily_count:
        query: daily_count
        cron: "0 */1 * * *"
        tier: medium

SQL files may start with ``-- name:`` / ``-- description:`` / ``-- tags:`` /
``-- private:`` directives; they fill fields missing from the YAML.
Structural checks (references, cron syntax) live in
:mod:`dune_sync.utils.validators`.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from ..engine.fingerprint import parse_directives
from .errors import ConfigurationError
from .logging_utils import get_logger
from .models import (
    DeclarationSet,
    MaterializedViewDeclaration,
    PerformanceTier,
    QueryDeclaration,
    Visibility,
)

log = get_logger(__name__)

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _to_bool(value: Any, *, where: str) -> bool:
    if isinstance(value, bool):
        return value
    s = str(value).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ConfigurationError(f"{where}: expected a boolean, got {value!r}")


def _optional_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return None if s in ("", "0", "null", "None") else s


def _visibility(block: Dict[str, Any], directives: Dict[str, str], *, where: str) -> Visibility:
    if "visibility" in block:
        raw = str(block["visibility"]).strip().lower()
        try:
            return Visibility(raw)
        except ValueError:
            raise ConfigurationError(f"{where}: visibility must be 'private' or 'public', got {raw!r}") from None
    if "private" in block:
        return Visibility.PRIVATE if _to_bool(block["private"], where=where) else Visibility.PUBLIC
    if "private" in directives:
        return Visibility.PRIVATE if _to_bool(directives["private"], where=where) else Visibility.PUBLIC
    return Visibility.PRIVATE


def _tags(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(t.strip() for t in value.split(",") if t.strip())
    return tuple(str(t).strip() for t in value if str(t).strip())


def _parse_query(key: str, block: Any, base_dir: Path) -> QueryDeclaration:
    where = f"queries.{key}"
    if isinstance(block, str):
        block = {"sql": block}
    if not isinstance(block, dict):
        raise ConfigurationError(f"{where}: expected a mapping")

    sql = block.get("sql")
    if block.get("sql_file"):
        if sql:
            raise ConfigurationError(f"{where}: use either 'sql' or 'sql_file', not both")
        sql_path = Path(str(block["sql_file"]))
        if not sql_path.is_absolute():
            sql_path = base_dir / sql_path
        if not sql_path.is_file():
            raise ConfigurationError(f"{where}: sql_file not found: {sql_path}")
        sql = sql_path.read_text(encoding="utf-8")
    sql = "" if sql is None else str(sql)
    directives = parse_directives(sql)

    return QueryDeclaration(
        key=key,
        name=str(block.get("name") or directives.get("name") or "").strip(),
        sql=sql,
        visibility=_visibility(block, directives, where=where),
        query_id=_optional_id(block.get("query_id")),
        description=str(block.get("description") or directives.get("description") or ""),
        tags=_tags(block.get("tags") if "tags" in block else directives.get("tags")),
    )


def _parse_view(key: str, block: Any) -> MaterializedViewDeclaration:
    where = f"materialized_views.{key}"
    if not isinstance(block, dict):
        raise ConfigurationError(f"{where}: expected a mapping")
    tier_raw = str(block.get("tier") or block.get("performance") or "medium").strip().lower()
    try:
        tier = PerformanceTier(tier_raw)
    except ValueError:
        raise ConfigurationError(f"{where}: tier must be 'medium' or 'large', got {tier_raw!r}") from None
    return MaterializedViewDeclaration(
        key=key,
        query=str(block.get("query") or "").strip(),
        cron=str(block.get("cron") or "").strip(),
        tier=tier,
        visibility=_visibility(block, {}, where=where),
    )


def parse_declarations(data: Any, *, base_dir: Union[str, Path] = ".") -> DeclarationSet:
    """Build a :class:`DeclarationSet` from an already-parsed YAML mapping."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Top-level declarations document must be a mapping")
    base = Path(base_dir)

    queries_raw = data.get("queries") or {}
    views_raw = data.get("materialized_views") or {}
    if not isinstance(queries_raw, dict) or not isinstance(views_raw, dict):
        raise ConfigurationError("'queries' and 'materialized_views' must be mappings keyed by resource key")

    queries = {str(k): _parse_query(str(k), v, base) for k, v in queries_raw.items()}
    views = {str(k): _parse_view(str(k), v) for k, v in views_raw.items()}
    return DeclarationSet(queries=queries, views=views, team=str(data.get("team") or "").strip())


def load_declarations(path: Union[str, Path]) -> DeclarationSet:
    """Read and parse the declarations YAML file.

    Raises:
        ConfigurationError: If the file is missing or malformed.
    """
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"Declarations file not found: {p}")
    try:
        with open(p, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse {p}: {exc}") from exc
    decls = parse_declarations(data, base_dir=p.parent)
    log.info("Loaded %d queries and %d materialized views from %s", len(decls.queries), len(decls.views), p)
    return decls
