"""
Runtime settings for dune-sync.

This module resolves environment configuration (`.env` + process environment).
The desired-state document itself is parsed by :mod:`dune_sync.core.declarations`.

Key rules:
  * `.env` provides DUNE_API_KEY, DUNE_API_URL, DUNE_SYNC_FILE, DUNE_SYNC_STATE, DUNE_TEAM
  * `TF_VAR_dune_api_key` is accepted as an alias for DUNE_API_KEY
  * A missing API key is *not* an error here: remote-touching commands check
    :attr:`Settings.has_credentials` before issuing any call
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import find_dotenv, load_dotenv

from .errors import ConfigurationError, CredentialError
from .logging_utils import get_logger

log = get_logger(__name__)

DEFAULT_API_URL = "https://api.dune.com/api/v1"
DEFAULT_NAMESPACE = "dune"


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime configuration resolved from `.env` and the environment.

    Attributes:
        api_url: Dune API base URL.
        api_key: API key, empty when not configured.
        declarations_file: Path of the desired-state YAML document.
        state_file: Path of the last-applied state (JSON).
        team: Team segment of materialized view full names.
        namespace: Namespace segment of materialized view full names.
        timeout_sec: Per-request HTTP timeout.
        retries: Retries on timeouts, connection errors and 5xx.
        workers: Keys processed concurrently within a tier (1 = serial).
    """
    api_url: str = DEFAULT_API_URL
    api_key: str = ""
    declarations_file: Path = Path("./dune.yml")
    state_file: Path = Path("./.dune-sync/state.json")
    team: str = ""
    namespace: str = DEFAULT_NAMESPACE
    timeout_sec: int = 30
    retries: int = 3
    workers: int = 4

    @classmethod
    def from_env(cls) -> "Settings":
        """Load `.env` and build a :class:`Settings` instance.

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed.
        """
        env_path = find_dotenv(usecwd=True) or ""
        load_dotenv(env_path, override=False)

        api_key = os.getenv("DUNE_API_KEY") or os.getenv("TF_VAR_dune_api_key") or ""
        settings = cls(
            api_url=(os.getenv("DUNE_API_URL") or DEFAULT_API_URL).rstrip("/"),
            api_key=api_key.strip(),
            declarations_file=Path(os.getenv("DUNE_SYNC_FILE") or "./dune.yml"),
            state_file=Path(os.getenv("DUNE_SYNC_STATE") or "./.dune-sync/state.json"),
            team=(os.getenv("DUNE_TEAM") or "").strip(),
            namespace=(os.getenv("DUNE_NAMESPACE") or DEFAULT_NAMESPACE).strip(),
            timeout_sec=_int_env("DUNE_HTTP_TIMEOUT_SEC", 30, minimum=1),
            retries=_int_env("DUNE_HTTP_RETRIES", 3),
            workers=_int_env("DUNE_SYNC_WORKERS", 4, minimum=1),
        )
        if not settings.has_credentials:
            log.debug("No DUNE_API_KEY configured; remote operations will be skipped or refused")
        return settings

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    def require_credentials(self) -> None:
        """Raise :class:`CredentialError` when no API key is configured."""
        if not self.has_credentials:
            raise CredentialError(
                "DUNE_API_KEY (or TF_VAR_dune_api_key) must be set. "
                "Create a .env at the repo root or export it in your shell."
            )

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Return a copy with the non-``None`` overrides applied (CLI flags win)."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        for key in ("declarations_file", "state_file"):
            if key in clean:
                clean[key] = Path(clean[key])
        return replace(self, **clean)

    def require_team(self, team: Optional[str] = None) -> str:
        resolved = (team or self.team or "").strip()
        if not resolved:
            raise ConfigurationError(
                "A team is required to name materialized views: set DUNE_TEAM, "
                "pass --team, or add 'team:' to the declarations file"
            )
        return resolved
