"""
Data model shared by the reconciliation engine.

Declarations are immutable snapshots of the desired-state document; they are
built at the start of a pass and discarded at its end. Remote observations are
never cached across passes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional, Tuple


class Visibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"

    @property
    def is_private(self) -> bool:
        return self is Visibility.PRIVATE


class PerformanceTier(str, Enum):
    MEDIUM = "medium"
    LARGE = "large"


class ResolveMode(str, Enum):
    """How the identity resolver obtained a query id."""
    REUSED = "reused"
    FOUND = "found"
    CREATED = "created"


class ResourceKind(str, Enum):
    QUERY = "query"
    MATERIALIZED_VIEW = "materialized_view"


class Outcome(str, Enum):
    """Per-key outcome reported at the end of a pass."""
    CONVERGED = "converged"
    DRIFTED = "drifted"
    MISSING = "missing"
    SKIPPED = "skipped"
    FAILED = "failed"
    ARCHIVED = "archived"
    DELETED = "deleted"
    PLANNED = "planned"


@dataclass(frozen=True)
class QueryDeclaration:
    """A Dune query as declared in the desired-state document."""
    key: str
    name: str
    sql: str
    visibility: Visibility = Visibility.PRIVATE
    query_id: Optional[str] = None
    description: str = ""
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MaterializedViewDeclaration:
    """A materialized view refreshed from the result of a declared query."""
    key: str
    query: str
    cron: str
    tier: PerformanceTier = PerformanceTier.MEDIUM
    visibility: Visibility = Visibility.PRIVATE


@dataclass(frozen=True)
class DeclarationSet:
    """All resources declared for one reconciliation pass."""
    queries: Dict[str, QueryDeclaration] = field(default_factory=dict)
    views: Dict[str, MaterializedViewDeclaration] = field(default_factory=dict)
    team: str = ""

    def keys(self) -> FrozenSet[str]:
        return frozenset(self.queries) | frozenset(self.views)


@dataclass(frozen=True)
class Resolution:
    """Outcome of identity resolution for one query.

    ``archived`` records an archived remote object that has *not* been
    restored yet; ``is_private`` is the observed visibility when known.
    """
    query_id: str
    mode: ResolveMode
    archived: bool = False
    unarchived: bool = False
    is_private: Optional[bool] = None
    note: str = ""


@dataclass(frozen=True)
class ResolvedQuery:
    key: str
    query_id: str
    fingerprint: str
    full_name: str
    mode: ResolveMode


@dataclass(frozen=True)
class ViewConvergence:
    key: str
    full_name: str
    query_id: str
    created: bool
    note: str = ""


@dataclass(frozen=True)
class QueryRecord:
    """A query as returned by ``GET /query/{id}``."""
    query_id: str
    name: str = ""
    sql: str = ""
    is_archived: bool = False
    is_private: Optional[bool] = None


@dataclass(frozen=True)
class ViewRecord:
    """A materialized view as returned by ``GET /materialized-views/{name}``.

    The API does not report the execution tier.
    """
    full_name: str
    view_id: str = ""
    query_id: str = ""
    cron_schedule: Optional[str] = None
    is_private: Optional[bool] = None


@dataclass(frozen=True)
class UsageRecord:
    """Account usage as returned by ``POST /usage``. Empty fields were not reported."""
    credits_used: str = "0"
    credits_remaining: str = "0"
    queries_executed: str = "0"
    storage_bytes: str = "0"
    billing_period_start: str = ""
    billing_period_end: str = ""

    def to_row(self) -> Dict[str, object]:
        return {
            "credits_used": self.credits_used,
            "credits_remaining": self.credits_remaining,
            "queries_executed": self.queries_executed,
            "storage_bytes": self.storage_bytes,
            "billing_period_start": self.billing_period_start,
            "billing_period_end": self.billing_period_end,
        }


@dataclass(frozen=True)
class DatasetRecord:
    """A dataset (table) known to Dune.

    ``exists`` is False when the API had no such dataset; ``error`` then
    carries its message.
    """
    namespace: str
    name: str
    dataset_id: str = ""
    full_name: str = ""
    description: str = ""
    columns: Tuple[str, ...] = ()
    is_private: Optional[bool] = None
    exists: bool = True
    error: str = ""

    def to_row(self) -> Dict[str, object]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "full_name": self.full_name or f"{self.namespace}.{self.name}",
            "id": self.dataset_id,
            "description": self.description,
            "columns": ",".join(self.columns),
            "is_private": "" if self.is_private is None else self.is_private,
            "exists": self.exists,
            "error": self.error,
        }


@dataclass(frozen=True)
class RemoteObservation:
    """Fresh snapshot of a materialized view."""
    exists: bool
    remote_id: Optional[str] = None
    schedule: Optional[str] = None


class DriftStatus(str, Enum):
    MATCH = "match"
    DRIFT = "drift"
    MISSING = "missing"
    UNKNOWN = "unknown"


class DriftReason(str, Enum):
    SCHEDULE_MISSING = "schedule_missing"
    SCHEDULE_MISMATCH = "schedule_mismatch"
    LINKED_RESOURCE_MISMATCH = "linked_resource_mismatch"


@dataclass(frozen=True)
class DriftVerdict:
    status: DriftStatus
    reasons: FrozenSet[DriftReason] = frozenset()
    message: str = ""
    observation: Optional[RemoteObservation] = None

    @classmethod
    def match(cls, observation: Optional[RemoteObservation] = None) -> "DriftVerdict":
        return cls(DriftStatus.MATCH, message="Configuration matches", observation=observation)

    @classmethod
    def drift(
        cls,
        reasons: Iterable[DriftReason],
        message: str = "",
        observation: Optional[RemoteObservation] = None,
    ) -> "DriftVerdict":
        return cls(DriftStatus.DRIFT, frozenset(reasons), message, observation)

    @classmethod
    def missing(cls) -> "DriftVerdict":
        return cls(DriftStatus.MISSING, message="Materialized view does not exist")

    @classmethod
    def unknown(cls, message: str) -> "DriftVerdict":
        return cls(DriftStatus.UNKNOWN, message=message)

    @property
    def reason_names(self) -> Tuple[str, ...]:
        return tuple(sorted(r.value for r in self.reasons))


@dataclass
class KeyResult:
    """One row of a pass report."""
    kind: ResourceKind
    key: str
    outcome: Outcome
    remote_id: str = ""
    full_name: str = ""
    mode: str = ""
    fingerprint: str = ""
    reasons: Tuple[str, ...] = ()
    note: str = ""
    error: str = ""

    def to_row(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "key": self.key,
            "outcome": self.outcome.value,
            "remote_id": self.remote_id,
            "full_name": self.full_name,
            "mode": self.mode,
            "fingerprint": self.fingerprint,
            "reasons": ",".join(self.reasons),
            "note": self.note,
            "error": self.error,
        }
