"""
DuneClient: JSON-first HTTP client for the Dune API (v1).

This module provides a single, reusable HTTP client with:
  * Consistent JSON helpers (`get_json`, `post_json`, `patch_json`, `delete_json`)
  * Typed failures (`RemoteNotFound`, `RemoteTransportError`, `RemoteTimeout`,
    `RemoteLogicError`, `CredentialError`) instead of raw HTTP errors
  * Bounded per-request timeout, retries with exponential backoff on
    timeouts, connection errors and 5xx (never on 4xx)
  * **Resource helpers** for queries, materialized views, usage and datasets so the engine
    never builds URLs itself

Example:
    client = DuneClient("https://api.dune.com/api/v1", api_key)
    query_id = client.create_query("Daily Count", "SELECT 1", is_private=True)
"""
from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import requests
import urllib3

from .errors import (
    CredentialError,
    RemoteLogicError,
    RemoteNotFound,
    RemoteTimeout,
    RemoteTransportError,
)
from .logging_utils import get_logger
from .models import DatasetRecord, QueryRecord, UsageRecord, ViewRecord

log = get_logger(__name__)

_LOG_PREVIEW = 600
_MAX_PAGES = 100


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(obj, ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


def _as_id(value: Any) -> str:
    """Normalize remote ids (ints in JSON) to strings; ``None``/0 become ''."""
    if value is None or value is False:
        return ""
    s = str(value).strip()
    return "" if s in ("0", "null", "None") else s


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes"}


@dataclass
class ClientOptions:
    """Runtime options for :class:`DuneClient`.

    Attributes:
        verify: If False, SSL certificate verification is disabled.
        timeout_sec: Per-request timeout (seconds).
        retries: Extra attempts on timeouts, connection errors and 5xx.
        backoff_sec: Base delay of the exponential backoff.
        page_size: Page size used when listing queries / views.
    """
    verify: bool = True
    timeout_sec: float = 30
    retries: int = 3
    backoff_sec: float = 0.5
    page_size: int = 1000


class DuneClient:
    """High-level HTTP client for the Dune API.

    Args:
        base_url: API base URL (e.g. ``https://api.dune.com/api/v1``).
        api_key: Key sent in the ``X-Dune-API-Key`` header.
        options: Optional :class:`ClientOptions`.
    """

    def __init__(self, base_url: str, api_key: str, *, options: Optional[ClientOptions] = None) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or ""
        self.options = options or ClientOptions()
        self.session = requests.Session()
        self.session.headers.update({
            "X-Dune-API-Key": self.api_key,
            "Accept": "application/json",
            "User-Agent": "dune-sync/0.1",
        })
        if not self.options.verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    # ---------------- low-level ----------------
    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _error_message(resp: requests.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text[:200]
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])[:400]
        return _short_json(data, 200)

    def _req(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Perform an HTTP request and return the JSON response (or empty dict).

        Raises:
            RemoteTimeout: The last attempt timed out.
            RemoteTransportError: Connection error or 5xx after all retries.
            RemoteNotFound: HTTP 404.
            CredentialError: HTTP 401/403.
            RemoteLogicError: Any other 4xx, or a 2xx body carrying ``error``.
        """
        url = self._url(path)
        corr = uuid.uuid4().hex[:8]
        attempts = max(0, int(self.options.retries)) + 1

        for attempt in range(attempts):
            last = attempt == attempts - 1
            start = time.time()
            try:
                resp = self.session.request(
                    method=method.upper(),
                    url=url,
                    json=json_body,
                    params=params,
                    timeout=self.options.timeout_sec,
                    verify=self.options.verify,
                )
            except requests.Timeout as exc:
                log.warning("HTTP[%s] %s %s timed out (attempt %d/%d)", corr, method, path, attempt + 1, attempts)
                if last:
                    raise RemoteTimeout(f"timed out after {self.options.timeout_sec}s", url=url) from exc
                self._sleep_backoff(attempt)
                continue
            except requests.RequestException as exc:
                log.warning("HTTP[%s] %s %s failed (attempt %d/%d): %s", corr, method, path, attempt + 1, attempts, exc)
                if last:
                    raise RemoteTransportError(str(exc), url=url) from exc
                self._sleep_backoff(attempt)
                continue

            elapsed = (time.time() - start) * 1000
            status = resp.status_code
            if status >= 500:
                message = self._error_message(resp)
                log.warning("HTTP[%s] %s %s -> %s: %s", corr, method, path, status, message)
                if last:
                    raise RemoteTransportError(message, status=status, url=url, body=resp.text[:200])
                self._sleep_backoff(attempt)
                continue

            if status >= 400:
                message = self._error_message(resp)
                log.debug("HTTP[%s] %s %s -> %s: %s", corr, method, path, status, message)
                if status == 404:
                    raise RemoteNotFound(message, status=status, url=url, body=resp.text[:200])
                if status in (401, 403):
                    raise CredentialError(f"Dune API rejected the API key ({status}): {message}")
                raise RemoteLogicError(message, status=status, url=url, body=resp.text[:200])

            log.debug("HTTP[%s] %s %s -> %s in %.1fms", corr, method, path, status, elapsed)
            if not resp.text:
                return {}
            try:
                data = resp.json()
            except ValueError:
                log.warning("HTTP[%s] non-JSON response from %s %s, returning empty dict", corr, method, path)
                return {}
            if isinstance(data, dict) and data.get("error"):
                raise RemoteLogicError(str(data["error"]), status=status, url=url, body=resp.text[:200])
            return data if isinstance(data, dict) else {"items": data}

        raise RemoteTransportError("no attempt was made", url=url)  # pragma: no cover

    def _sleep_backoff(self, attempt: int) -> None:
        time.sleep(self.options.backoff_sec * (2 ** attempt))

    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._req("GET", path, params=params)

    def post_json(self, path: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._req("POST", path, json_body=data)

    def patch_json(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._req("PATCH", path, json_body=data)

    def delete_json(self, path: str) -> Dict[str, Any]:
        return self._req("DELETE", path)

    # ---------------- queries ----------------
    def create_query(self, name: str, sql: str, *, is_private: bool = True) -> str:
        """Create a query and return its id."""
        res = self.post_json("query", {"name": name, "query_sql": sql, "is_private": bool(is_private)})
        query_id = _as_id(res.get("query_id") or (res.get("base") or {}).get("query_id"))
        if not query_id:
            raise RemoteLogicError(f"Failed to extract query_id from response: {_short_json(res, 200)}")
        log.info("Created query %s (%s)", query_id, name)
        return query_id

    def read_query(self, query_id: str) -> QueryRecord:
        res = self.get_json(f"query/{query_id}")
        base = res.get("base") or {}
        return QueryRecord(
            query_id=_as_id(res.get("query_id") or base.get("query_id")) or str(query_id),
            name=str(res.get("name") or base.get("name") or ""),
            sql=str(res.get("query_sql") or res.get("sql") or ""),
            is_archived=bool(_as_bool(res.get("is_archived"))),
            is_private=_as_bool(res.get("is_private")),
        )

    def search_queries_by_name(self, name: str) -> List[str]:
        """Return ids of the caller's queries whose name equals *name* exactly.

        The list endpoint does not report the archive flag.
        """
        found: List[str] = []
        offset: Optional[int] = None
        for _ in range(_MAX_PAGES):
            params: Dict[str, Any] = {"limit": self.options.page_size}
            if offset:
                params["offset"] = offset
            res = self.get_json("queries", params=params)
            for item in res.get("queries") or []:
                if isinstance(item, dict) and item.get("name") == name:
                    qid = _as_id(item.get("id") or item.get("query_id"))
                    if qid:
                        found.append(qid)
            next_offset = res.get("next_offset")
            if not next_offset:
                break
            offset = int(next_offset)
        return found

    def update_query(self, query_id: str, name: str, sql: str) -> None:
        body: Dict[str, Any] = {"query_sql": sql}
        if name:
            body["name"] = name
        self.patch_json(f"query/{query_id}", body)

    def archive_query(self, query_id: str) -> None:
        self.post_json(f"query/{query_id}/archive")

    def unarchive_query(self, query_id: str) -> None:
        self.post_json(f"query/{query_id}/unarchive")

    def make_private(self, query_id: str) -> None:
        self.post_json(f"query/{query_id}/private")

    def make_public(self, query_id: str) -> None:
        self.post_json(f"query/{query_id}/unprivate")

    # ---------------- materialized views ----------------
    def upsert_materialized_view(
        self,
        name: str,
        query_id: str,
        cron: str,
        tier: str,
        *,
        is_private: bool = True,
    ) -> Dict[str, Any]:
        """Create or replace a materialized view by name.

        Returns the raw response; ``execution_id`` is present when the API
        scheduled a refresh.
        """
        body = {
            "name": name,
            "query_id": int(query_id) if str(query_id).isdigit() else query_id,
            "cron_schedule": cron,
            "execution_tier": tier,
            "is_private": bool(is_private),
        }
        return self.post_json("materialized-views", body)

    def read_materialized_view(self, full_name: str) -> ViewRecord:
        res = self.get_json(f"materialized-views/{full_name}")
        cron = res.get("cron_schedule")
        return ViewRecord(
            full_name=str(res.get("full_name") or full_name),
            view_id=_as_id(res.get("id")),
            query_id=_as_id(res.get("query_id")),
            cron_schedule=str(cron) if cron not in (None, "") else None,
            is_private=_as_bool(res.get("is_private")),
        )

    def delete_materialized_view(self, full_name: str) -> None:
        self.delete_json(f"materialized-views/{full_name}")

    def refresh_materialized_view(self, full_name: str) -> Dict[str, Any]:
        return self.post_json(f"materialized-views/{full_name}/refresh")

    def list_materialized_views(self) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        offset: Optional[int] = None
        for _ in range(_MAX_PAGES):
            params: Dict[str, Any] = {"limit": self.options.page_size}
            if offset:
                params["offset"] = offset
            res = self.get_json("materialized-views", params=params)
            items.extend(i for i in (res.get("materialized_views") or []) if isinstance(i, dict))
            next_offset = res.get("next_offset")
            if not next_offset:
                break
            offset = int(next_offset)
        return items

    # ---------------- account & datasets ----------------
    def get_usage(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> UsageRecord:
        """Credits, executions and storage for the billing period (or the given dates)."""
        body: Dict[str, Any] = {}
        if start_date:
            body["start_date"] = start_date
        if end_date:
            body["end_date"] = end_date
        res = self.post_json("usage", body)

        def text(key: str, default: str) -> str:
            value = res.get(key)
            return default if value is None else str(value)

        return UsageRecord(
            credits_used=text("credits_used", "0"),
            credits_remaining=text("credits_remaining", "0"),
            queries_executed=text("queries_executed", "0"),
            storage_bytes=text("storage_bytes", "0"),
            billing_period_start=text("billing_period_start", ""),
            billing_period_end=text("billing_period_end", ""),
        )

    def list_datasets(
        self,
        *,
        owner: Optional[str] = None,
        limit: int = 100,
        offset: Optional[int] = None,
    ) -> Tuple[List[DatasetRecord], Optional[int]]:
        """Return one page of datasets and the offset of the next page (``None`` at the end)."""
        params: Dict[str, Any] = {"limit": int(limit)}
        if owner:
            params["owner"] = owner
        if offset:
            params["offset"] = int(offset)
        res = self.get_json("datasets", params=params)
        records = [self._dataset(item) for item in (res.get("datasets") or []) if isinstance(item, dict)]
        next_offset = res.get("next_offset")
        return records, (int(next_offset) if next_offset else None)

    def get_dataset(self, namespace: str, name: str) -> DatasetRecord:
        """Read one dataset; a 404 yields a record with ``exists=False``."""
        try:
            res = self.get_json(f"datasets/{namespace}/{name}")
        except RemoteNotFound as exc:
            return DatasetRecord(namespace=namespace, name=name, exists=False, error=exc.message)
        res.setdefault("namespace", namespace)
        res.setdefault("name", name)
        return self._dataset(res)

    @staticmethod
    def _dataset(item: Dict[str, Any]) -> DatasetRecord:
        namespace = str(item.get("namespace") or "")
        name = str(item.get("name") or item.get("table_name") or "")
        full_name = str(item.get("full_name") or "")
        if full_name and not (namespace and name) and "." in full_name:
            namespace, _, name = full_name.partition(".")
        columns = []
        for col in item.get("columns") or []:
            if isinstance(col, dict):
                col_name = str(col.get("name") or "")
                col_type = str(col.get("type") or "")
                columns.append(f"{col_name}:{col_type}" if col_type else col_name)
            else:
                columns.append(str(col))
        return DatasetRecord(
            namespace=namespace,
            name=name,
            dataset_id=_as_id(item.get("id")),
            full_name=full_name,
            description=str(item.get("description") or ""),
            columns=tuple(c for c in columns if c),
            is_private=_as_bool(item.get("is_private")),
        )
