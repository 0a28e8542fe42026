"""
Last-applied state store.

A small JSON document mapping resource key -> last known remote identity.
It is the primary source of remembered query ids; the remote name index is
only a fallback. Records of removed queries are kept with status
``archived`` so the same key reappearing later is restored rather than
recreated.
"""
from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

from .errors import ConfigurationError
from .logging_utils import get_logger
from .models import ResourceKind

log = get_logger(__name__)

STATE_VERSION = 1
STATUS_CONVERGED = "converged"
STATUS_ARCHIVED = "archived"


@dataclass(frozen=True)
class StateRecord:
    kind: str
    remote_id: str = ""
    fingerprint: str = ""
    full_name: str = ""
    status: str = STATUS_CONVERGED
    updated_at: str = ""

    @property
    def is_query(self) -> bool:
        return self.kind == ResourceKind.QUERY.value

    @property
    def is_view(self) -> bool:
        return self.kind == ResourceKind.MATERIALIZED_VIEW.value


class StateStore:
    """Thread-safe key/value store of :class:`StateRecord`, optionally file-backed.

    Args:
        path: JSON file to load from and save to. ``None`` keeps state in memory.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._records: Dict[str, StateRecord] = {}
        if self.path and self.path.is_file():
            self._records = self._read(self.path)

    @staticmethod
    def _read(path: Path) -> Dict[str, StateRecord]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh) or {}
        except ValueError as exc:
            raise ConfigurationError(f"State file {path} is not valid JSON: {exc}") from exc
        resources = data.get("resources") or {}
        if not isinstance(resources, dict):
            raise ConfigurationError(f"State file {path}: 'resources' must be a mapping")
        out: Dict[str, StateRecord] = {}
        for key, raw in resources.items():
            if not isinstance(raw, dict) or "kind" not in raw:
                log.warning("Ignoring malformed state record for '%s'", key)
                continue
            out[str(key)] = StateRecord(**{k: str(v) for k, v in raw.items() if k in StateRecord.__dataclass_fields__})
        log.debug("Loaded %d state records from %s", len(out), path)
        return out

    def get(self, key: str) -> Optional[StateRecord]:
        with self._lock:
            return self._records.get(key)

    def all(self) -> Dict[str, StateRecord]:
        with self._lock:
            return dict(self._records)

    def put(self, key: str, record: StateRecord) -> None:
        if not record.updated_at:
            record = StateRecord(**{**asdict(record), "updated_at": datetime.now(timezone.utc).isoformat()})
        with self._lock:
            self._records[key] = record

    def remove(self, key: str) -> Optional[StateRecord]:
        with self._lock:
            return self._records.pop(key, None)

    def remembered_query_id(self, key: str) -> Optional[str]:
        rec = self.get(key)
        if rec and rec.is_query and rec.remote_id:
            return rec.remote_id
        return None

    def save(self) -> None:
        """Write the store atomically (temp file + rename). No-op when in memory."""
        if not self.path:
            return
        with self._lock:
            payload = {
                "version": STATE_VERSION,
                "resources": {k: asdict(v) for k, v in sorted(self._records.items())},
            }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".state-", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2)
                fh.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        log.debug("Saved %d state records to %s", len(payload["resources"]), self.path)
