"""
Reconciler: one pass over a declaration set.

Pass order:
    validate -> credentials gate -> delete removed views -> queries (tier 1)
    -> materialized views (tier 2) -> archive removed queries -> drift check
    -> save state

Within a tier keys run concurrently on a thread pool; a failed key is
recorded in the :class:`PassReport` and never aborts its siblings. Every
query is processed before any view, so a view always sees its source
query's resolution from the same pass.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from ..core.config import DEFAULT_NAMESPACE
from ..core.dune_client import DuneClient
from ..core.errors import (
    ConfigurationError,
    CredentialError,
    RemoteError,
    RemoteNotFound,
    UnresolvedDependencyError,
    describe,
)
from ..core.logging_utils import get_logger
from ..core.models import (
    DatasetRecord,
    DeclarationSet,
    DriftStatus,
    KeyResult,
    MaterializedViewDeclaration,
    Outcome,
    QueryDeclaration,
    ResolvedQuery,
    ResourceKind,
    UsageRecord,
)
from ..core.state import STATUS_ARCHIVED, STATUS_CONVERGED, StateRecord, StateStore
from ..utils.validators import validate_date_range, validate_declarations
from .destroy import DestroyCoordinator
from .drift import DriftDetector
from .fingerprint import fingerprint
from .identity import IdentityResolver, is_remembered
from .matviews import MaterializedViewUpserter, view_full_name
from .upsert import QueryUpserter, query_full_name

T = TypeVar("T")

# Failures recorded against a single key; anything else aborts the pass.
_PER_KEY_ERRORS = (RemoteError, CredentialError, UnresolvedDependencyError, ConfigurationError)

_KIND_ORDER = {ResourceKind.QUERY: 0, ResourceKind.MATERIALIZED_VIEW: 1}


@dataclass
class PassReport:
    """Per-key results of one pass. Safe to fill from worker threads."""
    action: str
    results: List[KeyResult] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add(self, result: KeyResult) -> KeyResult:
        with self._lock:
            self.results.append(result)
        return result

    def get(self, kind: ResourceKind, key: str) -> Optional[KeyResult]:
        with self._lock:
            for r in self.results:
                if r.kind is kind and r.key == key:
                    return r
        return None

    @property
    def failures(self) -> List[KeyResult]:
        return [r for r in self.results if r.outcome is Outcome.FAILED]

    @property
    def any_failed(self) -> bool:
        return bool(self.failures)

    def summary(self) -> Dict[str, int]:
        return dict(Counter(r.outcome.value for r in self.results))

    def ordered(self) -> List[KeyResult]:
        return sorted(self.results, key=lambda r: (_KIND_ORDER[r.kind], r.key))

    def rows(self) -> List[Dict[str, object]]:
        return [r.to_row() for r in self.ordered()]


class Reconciler:
    """Drive declaration sets against the Dune API.

    Args:
        client: Remote API client.
        state: Last-applied state store; saved at the end of mutating passes.
        team: Team segment of view full names. Falls back to the declaration
            set's ``team``.
        namespace: Namespace segment of view full names.
        workers: Keys processed concurrently within a tier (1 = serial).
    """

    def __init__(
        self,
        client: DuneClient,
        state: StateStore,
        *,
        team: str = "",
        namespace: str = DEFAULT_NAMESPACE,
        workers: int = 4,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.state = state
        self.team = (team or "").strip()
        self.namespace = namespace or DEFAULT_NAMESPACE
        self.workers = max(1, int(workers))
        self.log = logger or get_logger(__name__)

        self.resolver = IdentityResolver(client, logger=self.log)
        self.upserter = QueryUpserter(client, logger=self.log)
        self.detector = DriftDetector(client, logger=self.log)
        self.destroyer = DestroyCoordinator(client, logger=self.log)

    # ----- helpers --------------------------------------------------------
    def _team_for(self, decls: DeclarationSet) -> str:
        team = self.team or decls.team
        if decls.views and not team:
            raise ConfigurationError(
                "A team is required to name materialized views: set DUNE_TEAM, "
                "pass --team, or add 'team:' to the declarations file"
            )
        return team

    def _require_credentials(self) -> None:
        if not self.client.has_credentials:
            raise CredentialError("DUNE_API_KEY (or TF_VAR_dune_api_key) must be set for this command")

    def _run_tier(self, items: Iterable[T], fn: Callable[[T], None]) -> None:
        items = list(items)
        if not items:
            return
        if self.workers == 1 or len(items) == 1:
            for item in items:
                fn(item)
            return
        with ThreadPoolExecutor(max_workers=min(self.workers, len(items))) as pool:
            futures = [pool.submit(fn, item) for item in items]
            for fut in as_completed(futures):
                fut.result()

    def _expected_query_id(self, decls: DeclarationSet, query_key: str) -> str:
        decl = decls.queries.get(query_key)
        if decl is not None and is_remembered(decl.query_id):
            return str(decl.query_id)
        return self.state.remembered_query_id(query_key) or ""

    def _removed(self, decls: DeclarationSet, kind: ResourceKind) -> List[Tuple[str, StateRecord]]:
        declared = decls.keys()
        return sorted(
            (key, rec)
            for key, rec in self.state.all().items()
            if key not in declared and rec.kind == kind.value and rec.status == STATUS_CONVERGED
        )

    # ----- apply ----------------------------------------------------------
    def apply(self, decls: DeclarationSet) -> PassReport:
        """Converge the remote state to *decls*.

        Raises:
            ConfigurationError: Invalid declarations (before any remote call).
            CredentialError: No API key configured.
        """
        validate_declarations(decls)
        team = self._team_for(decls)
        self._require_credentials()

        report = PassReport("apply")
        self.log.info("Apply: %d queries, %d materialized views", len(decls.queries), len(decls.views))

        # mutations already made must reach the state file even if the pass aborts
        try:
            self._run_tier(self._removed(decls, ResourceKind.MATERIALIZED_VIEW),
                           lambda kv: self._delete_removed_view(report, *kv))

            resolved: Dict[str, ResolvedQuery] = {}
            resolved_lock = threading.Lock()

            def query_task(decl: QueryDeclaration) -> None:
                rq = self._apply_query(report, decl)
                if rq is not None:
                    with resolved_lock:
                        resolved[decl.key] = rq

            self._run_tier(decls.queries.values(), query_task)

            if decls.views:
                upserter = MaterializedViewUpserter(self.client, team=team, namespace=self.namespace, logger=self.log)
                self._run_tier(decls.views.values(),
                               lambda v: self._apply_view(report, upserter, v, resolved.get(v.query)))

            self._run_tier(self._removed(decls, ResourceKind.QUERY),
                           lambda kv: self._archive_removed_query(report, *kv))

            for view in decls.views.values():
                row = report.get(ResourceKind.MATERIALIZED_VIEW, view.key)
                if row is None or row.outcome is Outcome.FAILED:
                    continue
                try:
                    self._apply_verdict(row, view, row.remote_id)
                except _PER_KEY_ERRORS as exc:
                    self.log.error("Drift check of '%s' failed: %s", view.key, exc)
                    row.outcome = Outcome.FAILED
                    row.error = describe(exc)
        finally:
            self.state.save()
        self.log.info("Apply finished: %s", report.summary())
        return report

    def _apply_query(self, report: PassReport, decl: QueryDeclaration) -> Optional[ResolvedQuery]:
        try:
            resolution = self.resolver.resolve(decl, self.state.remembered_query_id(decl.key))
            rq = self.upserter.converge(resolution, decl)
        except _PER_KEY_ERRORS as exc:
            self.log.error("Query '%s' failed: %s", decl.key, exc)
            report.add(KeyResult(ResourceKind.QUERY, decl.key, Outcome.FAILED, error=describe(exc)))
            return None

        self.state.put(decl.key, StateRecord(
            kind=ResourceKind.QUERY.value,
            remote_id=rq.query_id,
            fingerprint=rq.fingerprint,
            full_name=rq.full_name,
        ))
        report.add(KeyResult(
            ResourceKind.QUERY, decl.key, Outcome.CONVERGED,
            remote_id=rq.query_id, full_name=rq.full_name, mode=rq.mode.value,
            fingerprint=rq.fingerprint, note=resolution.note,
        ))
        return rq

    def _apply_view(
        self,
        report: PassReport,
        upserter: MaterializedViewUpserter,
        view: MaterializedViewDeclaration,
        resolved: Optional[ResolvedQuery],
    ) -> None:
        full_name = upserter.full_name(view.key)
        try:
            conv = upserter.converge(view, resolved)
        except _PER_KEY_ERRORS as exc:
            self.log.error("Materialized view '%s' failed: %s", view.key, exc)
            report.add(KeyResult(
                ResourceKind.MATERIALIZED_VIEW, view.key, Outcome.FAILED,
                full_name=full_name, error=describe(exc),
            ))
            return

        self.state.put(view.key, StateRecord(
            kind=ResourceKind.MATERIALIZED_VIEW.value,
            remote_id=conv.query_id,
            full_name=conv.full_name,
        ))
        report.add(KeyResult(
            ResourceKind.MATERIALIZED_VIEW, view.key, Outcome.CONVERGED,
            remote_id=conv.query_id, full_name=conv.full_name, note=conv.note,
        ))

    def _apply_verdict(self, row: KeyResult, view: MaterializedViewDeclaration, expected_query_id: str) -> None:
        verdict = self.detector.check(row.full_name, view.cron, expected_query_id)
        if verdict.status is DriftStatus.DRIFT:
            row.outcome = Outcome.DRIFTED
            row.reasons = verdict.reason_names
            row.note = verdict.message
        elif verdict.status is DriftStatus.MISSING:
            row.outcome = Outcome.MISSING
            row.note = verdict.message
        elif verdict.status is DriftStatus.UNKNOWN:
            row.note = f"drift unknown: {verdict.message}"

    def _delete_removed_view(self, report: PassReport, key: str, rec: StateRecord) -> None:
        try:
            outcome = self.destroyer.delete_view(rec.full_name)
        except _PER_KEY_ERRORS as exc:
            self.log.error("Delete of removed view '%s' failed: %s", key, exc)
            report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, key, Outcome.FAILED,
                                 full_name=rec.full_name, error=describe(exc)))
            return
        self.state.remove(key)
        report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, key, outcome,
                             remote_id=rec.remote_id, full_name=rec.full_name, note="removed from declarations"))

    def _archive_removed_query(self, report: PassReport, key: str, rec: StateRecord) -> None:
        try:
            outcome = self.destroyer.archive_query(rec.remote_id)
        except _PER_KEY_ERRORS as exc:
            self.log.error("Archive of removed query '%s' failed: %s", key, exc)
            report.add(KeyResult(ResourceKind.QUERY, key, Outcome.FAILED,
                                 remote_id=rec.remote_id, error=describe(exc)))
            return
        self.state.put(key, StateRecord(
            kind=rec.kind, remote_id=rec.remote_id, fingerprint=rec.fingerprint,
            full_name=rec.full_name, status=STATUS_ARCHIVED,
        ))
        report.add(KeyResult(ResourceKind.QUERY, key, outcome,
                             remote_id=rec.remote_id, full_name=rec.full_name, note="removed from declarations"))

    # ----- verify ---------------------------------------------------------
    def verify(self, decls: DeclarationSet) -> PassReport:
        """Drift-check every declared materialized view. Never mutates remote state.

        Without credentials every view is reported ``skipped``.
        """
        validate_declarations(decls)
        team = self._team_for(decls)
        report = PassReport("verify")

        def check(view: MaterializedViewDeclaration) -> None:
            full_name = view_full_name(self.namespace, team, view.key)
            expected = self._expected_query_id(decls, view.query)
            try:
                verdict = self.detector.check(full_name, view.cron, expected)
            except _PER_KEY_ERRORS as exc:
                report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, view.key, Outcome.FAILED,
                                     full_name=full_name, error=describe(exc)))
                return
            outcome = {
                DriftStatus.MATCH: Outcome.CONVERGED,
                DriftStatus.DRIFT: Outcome.DRIFTED,
                DriftStatus.MISSING: Outcome.MISSING,
                DriftStatus.UNKNOWN: Outcome.SKIPPED,
            }[verdict.status]
            observed = verdict.observation.remote_id if verdict.observation else None
            report.add(KeyResult(
                ResourceKind.MATERIALIZED_VIEW, view.key, outcome,
                remote_id=observed or expected, full_name=full_name,
                reasons=verdict.reason_names, note=verdict.message,
            ))

        self._run_tier(decls.views.values(), check)
        self.log.info("Verify finished: %s", report.summary())
        return report

    # ----- destroy --------------------------------------------------------
    def destroy(self, decls: DeclarationSet) -> PassReport:
        """Tear down every declared (and tracked) resource: views first, then queries."""
        validate_declarations(decls)
        team = self._team_for(decls)
        self._require_credentials()
        report = PassReport("destroy")

        views: Dict[str, str] = {}
        for key, rec in self.state.all().items():
            if rec.is_view and rec.full_name:
                views[key] = rec.full_name
        for view in decls.views.values():
            views.setdefault(view.key, view_full_name(self.namespace, team, view.key))

        def delete(item: Tuple[str, str]) -> None:
            key, full_name = item
            try:
                outcome = self.destroyer.delete_view(full_name)
            except _PER_KEY_ERRORS as exc:
                report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, key, Outcome.FAILED,
                                     full_name=full_name, error=describe(exc)))
                return
            self.state.remove(key)
            report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, key, outcome, full_name=full_name))

        queries: Dict[str, Optional[QueryDeclaration]] = {
            key: None for key, rec in self.state.all().items() if rec.is_query and rec.status == STATUS_CONVERGED
        }
        queries.update(decls.queries)

        def archive(item: Tuple[str, Optional[QueryDeclaration]]) -> None:
            key, decl = item
            try:
                query_id = self._destroy_target(key, decl)
                if not query_id:
                    report.add(KeyResult(ResourceKind.QUERY, key, Outcome.SKIPPED, note="no remote query found"))
                    return
                outcome = self.destroyer.archive_query(query_id)
            except _PER_KEY_ERRORS as exc:
                report.add(KeyResult(ResourceKind.QUERY, key, Outcome.FAILED, error=describe(exc)))
                return
            prev = self.state.get(key)
            self.state.put(key, StateRecord(
                kind=ResourceKind.QUERY.value, remote_id=query_id,
                fingerprint=prev.fingerprint if prev else "",
                full_name=query_full_name(query_id), status=STATUS_ARCHIVED,
            ))
            report.add(KeyResult(ResourceKind.QUERY, key, outcome,
                                 remote_id=query_id, full_name=query_full_name(query_id)))

        try:
            self._run_tier(sorted(views.items()), delete)
            self._run_tier(sorted(queries.items()), archive)
        finally:
            self.state.save()
        self.log.info("Destroy finished: %s", report.summary())
        return report

    def _destroy_target(self, key: str, decl: Optional[QueryDeclaration]) -> str:
        if decl is not None and is_remembered(decl.query_id):
            return str(decl.query_id)
        remembered = self.state.remembered_query_id(key)
        if remembered:
            return remembered
        if decl is not None and decl.name:
            matches = self.client.search_queries_by_name(decl.name)
            if matches:
                return matches[0]
        return ""

    # ----- plan -----------------------------------------------------------
    def plan(self, decls: DeclarationSet) -> PassReport:
        """Read-only preview of what :meth:`apply` would do.

        With credentials the remote is inspected (read and search only);
        without them the preview is built from the state store alone.
        """
        validate_declarations(decls)
        team = self._team_for(decls)
        remote = self.client.has_credentials
        report = PassReport("plan")

        def plan_query(decl: QueryDeclaration) -> None:
            try:
                action, query_id = self._plan_query_action(decl, remote)
            except _PER_KEY_ERRORS as exc:
                report.add(KeyResult(ResourceKind.QUERY, decl.key, Outcome.FAILED, error=describe(exc)))
                return
            fp = fingerprint(decl.sql)
            prev = self.state.get(decl.key)
            if prev is None or not prev.fingerprint:
                change = "new content"
            elif prev.fingerprint == fp:
                change = "content unchanged"
            else:
                change = "content changed"
            report.add(KeyResult(
                ResourceKind.QUERY, decl.key, Outcome.PLANNED,
                remote_id=query_id, full_name=query_full_name(query_id) if query_id else "",
                mode=action, fingerprint=fp, note=change,
            ))

        def plan_view(view: MaterializedViewDeclaration) -> None:
            full_name = view_full_name(self.namespace, team, view.key)
            action = "upsert"
            if remote:
                try:
                    self.client.read_materialized_view(full_name)
                    action = "update"
                except RemoteNotFound:
                    action = "create"
                except _PER_KEY_ERRORS as exc:
                    report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, view.key, Outcome.FAILED,
                                         full_name=full_name, error=describe(exc)))
                    return
            report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, view.key, Outcome.PLANNED,
                                 full_name=full_name, mode=action, note=f"query {view.query} @ {view.cron}"))

        self._run_tier(decls.queries.values(), plan_query)
        self._run_tier(decls.views.values(), plan_view)
        for key, rec in self._removed(decls, ResourceKind.MATERIALIZED_VIEW):
            report.add(KeyResult(ResourceKind.MATERIALIZED_VIEW, key, Outcome.PLANNED,
                                 full_name=rec.full_name, mode="delete", note="removed from declarations"))
        for key, rec in self._removed(decls, ResourceKind.QUERY):
            report.add(KeyResult(ResourceKind.QUERY, key, Outcome.PLANNED, remote_id=rec.remote_id,
                                 full_name=rec.full_name, mode="archive", note="removed from declarations"))
        if not remote:
            self.log.warning("No DUNE_API_KEY configured; plan is based on local state only")
        return report

    def _plan_query_action(self, decl: QueryDeclaration, remote: bool) -> Tuple[str, str]:
        remembered = str(decl.query_id) if is_remembered(decl.query_id) else self.state.remembered_query_id(decl.key)
        if not remote:
            return ("reuse", remembered) if remembered else ("resolve", "")
        if is_remembered(remembered):
            try:
                record = self.client.read_query(remembered)
            except RemoteNotFound:
                pass
            else:
                return ("unarchive" if record.is_archived else "reuse"), remembered
        matches = self.client.search_queries_by_name(decl.name)
        if matches:
            return "found", matches[0]
        return "create", ""

    # ----- single-key operations -----------------------------------------
    def import_query(self, key: str, query_id: str) -> KeyResult:
        """Adopt an existing remote query under *key* in the state store."""
        if not key or not is_remembered(query_id):
            raise ConfigurationError("import requires a key and a non-empty query id")
        self._require_credentials()
        record = self.client.read_query(str(query_id).strip())
        self.state.put(key, StateRecord(
            kind=ResourceKind.QUERY.value,
            remote_id=record.query_id,
            fingerprint=fingerprint(record.sql) if record.sql else "",
            full_name=query_full_name(record.query_id),
        ))
        self.state.save()
        self.log.info("Imported query %s as '%s'", record.query_id, key)
        return KeyResult(ResourceKind.QUERY, key, Outcome.CONVERGED, remote_id=record.query_id,
                         full_name=query_full_name(record.query_id), mode="imported", note=record.name)

    def forget(self, key: str) -> StateRecord:
        """Drop *key* from the state store. Remote objects are left untouched."""
        rec = self.state.remove(key)
        if rec is None:
            raise ConfigurationError(f"No state record for '{key}'")
        self.state.save()
        self.log.info("Forgot '%s' (%s %s)", key, rec.kind, rec.remote_id)
        return rec

    def refresh(self, view_key: str, decls: Optional[DeclarationSet] = None) -> KeyResult:
        """Trigger a refresh of one materialized view."""
        self._require_credentials()
        rec = self.state.get(view_key)
        if rec is not None and rec.is_view and rec.full_name:
            full_name = rec.full_name
        else:
            team = self.team or (decls.team if decls else "")
            if not team:
                raise ConfigurationError(f"Unknown materialized view '{view_key}' and no team to derive its name")
            full_name = view_full_name(self.namespace, team, view_key)
        res = self.client.refresh_materialized_view(full_name)
        execution_id = str(res.get("execution_id") or "")
        self.log.info("Refresh of %s requested (%s)", full_name, execution_id or "no execution id")
        return KeyResult(ResourceKind.MATERIALIZED_VIEW, view_key, Outcome.CONVERGED, full_name=full_name,
                         mode="refresh", note=f"execution {execution_id}" if execution_id else "")

    def list_views(self) -> List[Dict[str, object]]:
        self._require_credentials()
        rows: List[Dict[str, object]] = []
        for item in self.client.list_materialized_views():
            rows.append({
                "full_name": item.get("full_name") or item.get("name") or "",
                "query_id": item.get("query_id") or "",
                "cron_schedule": item.get("cron_schedule") or "",
                "is_private": item.get("is_private", ""),
            })
        return sorted(rows, key=lambda r: str(r["full_name"]))

    # ----- account, datasets and local state -------------------------------
    def usage(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> UsageRecord:
        start_date, end_date = validate_date_range(start_date, end_date)
        self._require_credentials()
        record = self.client.get_usage(start_date, end_date)
        self.log.info("Usage: %s credits used, %s remaining", record.credits_used, record.credits_remaining)
        return record

    def list_datasets(
        self, *, owner: Optional[str] = None, limit: int = 100, offset: Optional[int] = None,
    ) -> Tuple[List[DatasetRecord], Optional[int]]:
        """One page of datasets, optionally filtered by *owner*, plus the next offset."""
        if limit < 1:
            raise ConfigurationError("limit must be >= 1")
        self._require_credentials()
        records, next_offset = self.client.list_datasets(owner=owner, limit=limit, offset=offset)
        if next_offset:
            self.log.info("More datasets available from offset %s", next_offset)
        return records, next_offset

    def get_dataset(self, name: str) -> DatasetRecord:
        """Look up ``namespace.name``. An unknown dataset is reported, not raised."""
        namespace, _, table = (name or "").strip().partition(".")
        if not namespace or not table:
            raise ConfigurationError(f"Dataset name '{name}' must be of the form namespace.name")
        self._require_credentials()
        record = self.client.get_dataset(namespace, table)
        if not record.exists:
            self.log.warning("Dataset %s.%s not found: %s", namespace, table, record.error)
        return record

    def state_rows(self) -> List[Dict[str, object]]:
        """Records of the state store, sorted by kind then key. No remote calls."""
        rows: List[Dict[str, object]] = []
        for key, rec in self.state.all().items():
            rows.append({
                "kind": rec.kind,
                "key": key,
                "status": rec.status,
                "remote_id": rec.remote_id,
                "full_name": rec.full_name,
                "fingerprint": rec.fingerprint,
                "updated_at": rec.updated_at,
            })
        order = {kind.value: rank for kind, rank in _KIND_ORDER.items()}
        return sorted(rows, key=lambda r: (order.get(str(r["kind"]), 9), str(r["key"])))
