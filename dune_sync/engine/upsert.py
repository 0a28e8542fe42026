"""
Query upsert: converge a resolved query to its declared name and SQL.

The update is issued on every pass, changed or not; the remote object may
have been edited out-of-band, so a local fingerprint comparison is not
authoritative.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..core.dune_client import DuneClient
from ..core.logging_utils import get_logger
from ..core.models import QueryDeclaration, Resolution, ResolvedQuery
from .fingerprint import fingerprint


def query_full_name(query_id: str) -> str:
    """Identifier used to reference a query result from Dune SQL."""
    return f"query_{query_id}"


class QueryUpserter:
    def __init__(self, client: DuneClient, *, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.log = logger or get_logger(__name__)

    def converge(self, resolution: Resolution, decl: QueryDeclaration) -> ResolvedQuery:
        query_id = resolution.query_id
        if resolution.archived and not resolution.unarchived:
            self.log.info("Unarchiving query %s before update ('%s')", query_id, decl.key)
            self.client.unarchive_query(query_id)

        self.client.update_query(query_id, decl.name, decl.sql)
        self.log.debug("Updated query %s ('%s')", query_id, decl.key)

        wants_private = decl.visibility.is_private
        if resolution.is_private is not None and resolution.is_private != wants_private:
            self.log.info("Switching query %s to %s", query_id, decl.visibility.value)
            if wants_private:
                self.client.make_private(query_id)
            else:
                self.client.make_public(query_id)

        return ResolvedQuery(
            key=decl.key,
            query_id=query_id,
            fingerprint=fingerprint(decl.sql),
            full_name=query_full_name(query_id),
            mode=resolution.mode,
        )
