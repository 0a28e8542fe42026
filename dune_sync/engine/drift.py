"""
Drift detection for materialized views.

Compares the declared schedule and source query against a fresh read of the
view. Only what the read API exposes is compared: the execution tier is not
observable, so it never produces drift.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from ..core.dune_client import DuneClient
from ..core.errors import CredentialError, RemoteError, RemoteNotFound
from ..core.logging_utils import get_logger
from ..core.models import DriftReason, DriftVerdict, RemoteObservation
from .identity import is_remembered


def classify(observation: RemoteObservation, expected_schedule: str, expected_query_id: str) -> DriftVerdict:
    """Pure classification of an observation; reasons accumulate."""
    if not observation.exists:
        return DriftVerdict.missing()

    expected_schedule = (expected_schedule or "").strip()
    reasons: List[DriftReason] = []
    messages: List[str] = []

    if expected_schedule:
        if observation.schedule is None:
            reasons.append(DriftReason.SCHEDULE_MISSING)
            messages.append(f"cron_schedule is null but expected '{expected_schedule}'")
        elif observation.schedule != expected_schedule:
            reasons.append(DriftReason.SCHEDULE_MISMATCH)
            messages.append(f"cron_schedule is '{observation.schedule}' but expected '{expected_schedule}'")

    if is_remembered(expected_query_id):
        actual = observation.remote_id or ""
        if actual != str(expected_query_id).strip():
            reasons.append(DriftReason.LINKED_RESOURCE_MISMATCH)
            messages.append(f"query_id is '{actual or '0'}' but expected '{expected_query_id}'")

    if reasons:
        return DriftVerdict.drift(reasons, "DRIFT: " + "; ".join(messages), observation)
    return DriftVerdict.match(observation)


class DriftDetector:
    def __init__(self, client: DuneClient, *, logger: Optional[logging.Logger] = None) -> None:
        self.client = client
        self.log = logger or get_logger(__name__)

    def observe(self, full_name: str) -> RemoteObservation:
        try:
            record = self.client.read_materialized_view(full_name)
        except RemoteNotFound:
            return RemoteObservation(exists=False)
        return RemoteObservation(exists=True, remote_id=record.query_id or None, schedule=record.cron_schedule)

    def check(self, full_name: str, expected_schedule: str, expected_query_id: str) -> DriftVerdict:
        """Return the drift verdict for *full_name*.

        ``Unknown`` means the check could not run (no credentials, rejected
        key, transport failure or any other API error except not-found); it
        is never reported as a match.
        """
        if not self.client.has_credentials:
            return DriftVerdict.unknown("DUNE_API_KEY not set, skipping verification")
        try:
            observation = self.observe(full_name)
        except CredentialError as exc:
            return DriftVerdict.unknown(str(exc))
        except RemoteError as exc:
            # not-found is handled by observe(); anything else leaves the verdict open
            self.log.warning("Drift check for %s could not run: %s", full_name, exc)
            return DriftVerdict.unknown(f"check failed: {exc.message}")

        verdict = classify(observation, expected_schedule, expected_query_id)
        self.log.debug("Drift check %s -> %s %s", full_name, verdict.status.value, verdict.reason_names)
        return verdict
