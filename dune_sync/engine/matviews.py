"""
Materialized view upsert.

A view depends on the query it materializes: it can only be converged once
that query's id has been resolved in the current pass. The remote endpoint
creates or replaces by name and is expected to acknowledge unchanged
parameters without scheduling redundant refresh work.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..core.config import DEFAULT_NAMESPACE
from ..core.dune_client import DuneClient
from ..core.errors import ConfigurationError, RemoteLogicError, UnresolvedDependencyError
from ..core.logging_utils import get_logger
from ..core.models import MaterializedViewDeclaration, ResolvedQuery, ViewConvergence


def view_full_name(namespace: str, team: str, key: str) -> str:
    return f"{namespace}.{team}.{key}"


class MaterializedViewUpserter:
    def __init__(
        self,
        client: DuneClient,
        *,
        team: str,
        namespace: str = DEFAULT_NAMESPACE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not team:
            raise ConfigurationError("team is required to name materialized views")
        self.client = client
        self.team = team
        self.namespace = namespace or DEFAULT_NAMESPACE
        self.log = logger or get_logger(__name__)

    def full_name(self, key: str) -> str:
        return view_full_name(self.namespace, self.team, key)

    def converge(self, view: MaterializedViewDeclaration, resolved: Optional[ResolvedQuery]) -> ViewConvergence:
        """Upsert *view* on top of its resolved source query.

        Raises:
            UnresolvedDependencyError: The source query has no resolved id in this pass.
        """
        if resolved is None or not resolved.query_id:
            raise UnresolvedDependencyError(
                f"Materialized view '{view.key}' cannot be converged: query '{view.query}' is not resolved"
            )

        full_name = self.full_name(view.key)
        try:
            res = self.client.upsert_materialized_view(
                view.key,
                resolved.query_id,
                view.cron,
                view.tier.value,
                is_private=view.visibility.is_private,
            )
        except RemoteLogicError as exc:
            if not exc.name_conflict:
                raise
            self.log.info("Materialized view %s already exists (%s)", full_name, exc.message)
            return ViewConvergence(view.key, full_name, resolved.query_id, created=False, note="already exists")

        note = ""
        execution_id = (res or {}).get("execution_id")
        if execution_id:
            note = f"refresh {execution_id}"
        self.log.info("Upserted materialized view %s -> query %s (%s)", full_name, resolved.query_id, view.cron)
        return ViewConvergence(view.key, full_name, resolved.query_id, created=True, note=note)
