import threading
from typing import Dict, List, Optional, Tuple

import pytest

from dune_sync.core.errors import RemoteLogicError, RemoteNotFound
from dune_sync.core.models import (
    DatasetRecord,
    DeclarationSet,
    MaterializedViewDeclaration,
    PerformanceTier,
    QueryDeclaration,
    QueryRecord,
    UsageRecord,
    ViewRecord,
    Visibility,
)
from dune_sync.core.state import StateStore


class FakeDuneClient:
    """In-memory stand-in for DuneClient with the same method surface.

    ``fail(method, exc, arg=None)`` makes the next calls of *method* (optionally
    only for *arg*) raise *exc*; ``calls`` records every call in order.
    """

    def __init__(self, api_key: str = "TEST", team: str = "analytics") -> None:
        self.api_key = api_key
        self.team = team
        self.queries: Dict[str, dict] = {}
        self.views: Dict[str, dict] = {}
        self.datasets: Dict[str, dict] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._failures: Dict[str, List[Tuple[Optional[str], Exception]]] = {}
        self._next_id = 1000
        self._lock = threading.Lock()

    # ----- test helpers ---------------------------------------------------
    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def fail(self, method: str, exc: Exception, arg: Optional[str] = None) -> None:
        self._failures.setdefault(method, []).append((arg, exc))

    def add_query(self, name: str, sql: str = "SELECT 1", *, archived: bool = False, is_private: bool = True) -> str:
        with self._lock:
            self._next_id += 1
            qid = str(self._next_id)
            self.queries[qid] = {"name": name, "sql": sql, "is_archived": archived, "is_private": is_private}
        return qid

    def add_view(self, key: str, query_id: str, cron: Optional[str]) -> str:
        full_name = f"dune.{self.team}.{key}"
        self.views[full_name] = {"query_id": str(query_id), "cron_schedule": cron, "tier": "medium", "is_private": True}
        return full_name

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    def _call(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method, args))
            for arg, exc in self._failures.get(method, []):
                if arg is None or (args and str(args[0]) == arg):
                    raise exc

    # ----- queries --------------------------------------------------------
    def create_query(self, name, sql, *, is_private=True):
        self._call("create_query", name)
        return self.add_query(name, sql, is_private=is_private)

    def read_query(self, query_id):
        self._call("read_query", query_id)
        q = self.queries.get(str(query_id))
        if q is None:
            raise RemoteNotFound("Query not found", status=404)
        return QueryRecord(str(query_id), q["name"], q["sql"], q["is_archived"], q["is_private"])

    def search_queries_by_name(self, name):
        self._call("search_queries_by_name", name)
        return [qid for qid, q in sorted(self.queries.items()) if q["name"] == name]

    def update_query(self, query_id, name, sql):
        self._call("update_query", query_id)
        q = self.queries.get(str(query_id))
        if q is None:
            raise RemoteNotFound("Query not found", status=404)
        q.update(name=name, sql=sql)

    def archive_query(self, query_id):
        self._call("archive_query", query_id)
        q = self.queries.get(str(query_id))
        if q is None:
            raise RemoteNotFound("Query not found", status=404)
        q["is_archived"] = True

    def unarchive_query(self, query_id):
        self._call("unarchive_query", query_id)
        self.queries[str(query_id)]["is_archived"] = False

    def make_private(self, query_id):
        self._call("make_private", query_id)
        self.queries[str(query_id)]["is_private"] = True

    def make_public(self, query_id):
        self._call("make_public", query_id)
        self.queries[str(query_id)]["is_private"] = False

    # ----- materialized views ---------------------------------------------
    def upsert_materialized_view(self, name, query_id, cron, tier, *, is_private=True):
        self._call("upsert_materialized_view", name)
        full_name = f"dune.{self.team}.{name}"
        if str(query_id) not in self.queries:
            raise RemoteLogicError("query not found", status=400)
        new = {"query_id": str(query_id), "cron_schedule": cron, "tier": tier, "is_private": is_private}
        previous = self.views.get(full_name)
        self.views[full_name] = new
        if previous == new:
            return {"name": full_name}
        return {"name": full_name, "execution_id": f"01EXEC{len(self.calls)}"}

    def read_materialized_view(self, full_name):
        self._call("read_materialized_view", full_name)
        v = self.views.get(full_name)
        if v is None:
            raise RemoteNotFound("Materialized view not found", status=404)
        return ViewRecord(full_name, "mv-1", v["query_id"], v["cron_schedule"], v["is_private"])

    def delete_materialized_view(self, full_name):
        self._call("delete_materialized_view", full_name)
        if self.views.pop(full_name, None) is None:
            raise RemoteNotFound("Materialized view not found", status=404)

    def refresh_materialized_view(self, full_name):
        self._call("refresh_materialized_view", full_name)
        if full_name not in self.views:
            raise RemoteNotFound("Materialized view not found", status=404)
        return {"execution_id": "01REFRESH"}

    def list_materialized_views(self):
        self._call("list_materialized_views")
        return [{"full_name": k, **v} for k, v in sorted(self.views.items())]

    # ----- account & datasets ---------------------------------------------
    def add_dataset(self, namespace: str, name: str, columns=("block_time:timestamp",), owner: str = "dune") -> str:
        full_name = f"{namespace}.{name}"
        self.datasets[full_name] = {"namespace": namespace, "name": name, "columns": tuple(columns), "owner": owner}
        return full_name

    def get_usage(self, start_date=None, end_date=None):
        self._call("get_usage", start_date, end_date)
        return UsageRecord(credits_used="12.5", credits_remaining="87.5", queries_executed="40",
                           storage_bytes="2048", billing_period_start=start_date or "2026-10-01",
                           billing_period_end=end_date or "2026-10-31")

    def list_datasets(self, *, owner=None, limit=100, offset=None):
        self._call("list_datasets", owner)
        items = [d for _, d in sorted(self.datasets.items()) if owner is None or d["owner"] == owner]
        start = offset or 0
        page = items[start:start + limit]
        next_offset = start + limit if start + limit < len(items) else None
        return [self._dataset(d) for d in page], next_offset

    def get_dataset(self, namespace, name):
        self._call("get_dataset", f"{namespace}.{name}")
        d = self.datasets.get(f"{namespace}.{name}")
        if d is None:
            return DatasetRecord(namespace=namespace, name=name, exists=False, error="Dataset not found")
        return self._dataset(d)

    @staticmethod
    def _dataset(d):
        return DatasetRecord(namespace=d["namespace"], name=d["name"], full_name=f"{d['namespace']}.{d['name']}",
                             columns=d["columns"], is_private=False)


@pytest.fixture()
def fake_client():
    return FakeDuneClient()


@pytest.fixture()
def state():
    return StateStore()


@pytest.fixture()
def make_decls():
    """Build a DeclarationSet from compact tuples.

    queries: {key: (name, sql)} or {key: QueryDeclaration}
    views:   {key: (query_key, cron)}
    """

    def _make(queries=None, views=None, team="analytics"):
        qs = {}
        for key, value in (queries or {}).items():
            if isinstance(value, QueryDeclaration):
                qs[key] = value
            else:
                name, sql = value
                qs[key] = QueryDeclaration(key=key, name=name, sql=sql, visibility=Visibility.PRIVATE)
        vs = {
            key: MaterializedViewDeclaration(key=key, query=q, cron=cron, tier=PerformanceTier.MEDIUM)
            for key, (q, cron) in (views or {}).items()
        }
        return DeclarationSet(queries=qs, views=vs, team=team)

    return _make
