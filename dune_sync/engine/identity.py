"""
Identity resolution for queries.

The Dune API has no foreign key we control, so a query's identity is found
in three tiers, first success wins:

1. the remembered id (declaration ``query_id`` or last-applied state),
   restored from the archive if needed;
2. an exact, case-sensitive match on the display name among the caller's
   queries;
3. a newly created query.

A remembered id is only abandoned when the API confirms it is gone (404).
"""
from __future__ import annotations

import logging
from typing import Optional

from ..core.dune_client import DuneClient
from ..core.errors import RemoteLogicError, RemoteNotFound
from ..core.logging_utils import get_logger
from ..core.models import QueryDeclaration, Resolution, ResolveMode
from ..utils.validators import require_query_fields

_ABSENT_IDS = {"", "0", "null", "none"}


def is_remembered(query_id: Optional[str]) -> bool:
    return query_id is not None and str(query_id).strip().lower() not in _ABSENT_IDS


class IdentityResolver:
    def __init__(self, client: DuneClient, *, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.log = logger or get_logger(__name__)

    def resolve(self, decl: QueryDeclaration, remembered_id: Optional[str] = None) -> Resolution:
        """Return the authoritative query id for *decl*.

        Args:
            decl: Declared query.
            remembered_id: Id from the state store; ``decl.query_id`` wins when set.

        Raises:
            ConfigurationError: Empty name or SQL (before any remote call).
            RemoteTransportError / RemoteTimeout / CredentialError: Propagated
                as a failure for this key only.
        """
        require_query_fields(decl)
        candidate = decl.query_id if is_remembered(decl.query_id) else remembered_id

        if is_remembered(candidate):
            resolution = self._reuse(decl, str(candidate).strip())
            if resolution is not None:
                return resolution

        found = self._search(decl)
        if found is not None:
            return found

        return self._create(decl)

    def _reuse(self, decl: QueryDeclaration, query_id: str) -> Optional[Resolution]:
        try:
            record = self.client.read_query(query_id)
        except RemoteNotFound:
            self.log.warning("Query %s remembered for '%s' no longer exists; searching by name", query_id, decl.key)
            return None

        if record.is_archived:
            self.log.info("Query %s for '%s' is archived, unarchiving", query_id, decl.key)
            self.client.unarchive_query(query_id)
            return Resolution(
                query_id=query_id,
                mode=ResolveMode.REUSED,
                unarchived=True,
                is_private=record.is_private,
                note="unarchived",
            )
        self.log.debug("Reusing query %s for '%s'", query_id, decl.key)
        return Resolution(query_id=query_id, mode=ResolveMode.REUSED, is_private=record.is_private)

    def _search(self, decl: QueryDeclaration) -> Optional[Resolution]:
        matches = self.client.search_queries_by_name(decl.name)
        if not matches:
            return None
        if len(matches) > 1:
            self.log.warning("Found %d queries named %r; using the first readable of %s",
                             len(matches), decl.name, ", ".join(matches))
        for query_id in matches:
            # read the hit so the upserter knows whether to unarchive and re-apply visibility
            try:
                record = self.client.read_query(query_id)
            except RemoteNotFound:
                self.log.debug("Query %s matched by name is gone", query_id)
                continue
            self.log.info("Found existing query %s for '%s' by name%s",
                          query_id, decl.key, " (archived)" if record.is_archived else "")
            return Resolution(
                query_id=query_id,
                mode=ResolveMode.FOUND,
                archived=record.is_archived,
                is_private=record.is_private,
            )
        return None

    def _create(self, decl: QueryDeclaration) -> Resolution:
        try:
            query_id = self.client.create_query(decl.name, decl.sql, is_private=decl.visibility.is_private)
        except RemoteLogicError as exc:
            if not exc.name_conflict:
                raise
            # Name collision on create: a concurrent or retried create already succeeded.
            retry = self._search(decl)
            if retry is None:
                raise
            self.log.info("Create of '%s' reported '%s'; using existing query %s", decl.key, exc.message, retry.query_id)
            return Resolution(
                query_id=retry.query_id,
                mode=ResolveMode.FOUND,
                archived=retry.archived,
                is_private=retry.is_private,
                note=f"create: {exc.message}",
            )
        return Resolution(query_id=query_id, mode=ResolveMode.CREATED, is_private=decl.visibility.is_private)
