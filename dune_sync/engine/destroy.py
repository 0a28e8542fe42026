"""
Compensating actions for removed resources.

Queries are soft-deleted (archived) so a key that reappears can be restored
with its id; materialized views are hard-deleted. "Already gone" and a
timeout on the request are both treated as success: the next pass observes
the result either way.
"""
from __future__ import annotations

import logging
from typing import Optional

from ..core.dune_client import DuneClient
from ..core.errors import RemoteNotFound, RemoteTimeout
from ..core.logging_utils import get_logger
from ..core.models import Outcome


class DestroyCoordinator:
    def __init__(self, client: DuneClient, *, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.log = logger or get_logger(__name__)

    def archive_query(self, query_id: str) -> Outcome:
        """Archive *query_id*. Other remote failures propagate."""
        try:
            self.client.archive_query(query_id)
        except RemoteNotFound:
            self.log.info("Query %s already gone, nothing to archive", query_id)
        except RemoteTimeout:
            self.log.warning("Archive of query %s timed out; assuming it went through", query_id)
        else:
            self.log.info("Archived query %s", query_id)
        return Outcome.ARCHIVED

    def delete_view(self, full_name: str) -> Outcome:
        """Delete materialized view *full_name*. Other remote failures propagate."""
        try:
            self.client.delete_materialized_view(full_name)
        except RemoteNotFound:
            self.log.info("Materialized view %s already gone", full_name)
        except RemoteTimeout:
            self.log.warning("Delete of materialized view %s timed out; assuming it went through", full_name)
        else:
            self.log.info("Deleted materialized view %s", full_name)
        return Outcome.DELETED
