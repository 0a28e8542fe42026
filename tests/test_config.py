from pathlib import Path

import pytest

from dune_sync.core.config import DEFAULT_API_URL, Settings
from dune_sync.core.errors import ConfigurationError, CredentialError

ENV_VARS = [
    "DUNE_API_KEY", "TF_VAR_dune_api_key", "DUNE_API_URL", "DUNE_SYNC_FILE", "DUNE_SYNC_STATE",
    "DUNE_TEAM", "DUNE_NAMESPACE", "DUNE_HTTP_TIMEOUT_SEC", "DUNE_HTTP_RETRIES", "DUNE_SYNC_WORKERS",
]


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    # setenv first so values loaded from .env files are undone on teardown
    for name in ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)


def test_defaults_without_env():
    s = Settings.from_env()
    assert s.api_url == DEFAULT_API_URL
    assert s.api_key == ""
    assert not s.has_credentials
    assert s.declarations_file == Path("./dune.yml")
    assert s.namespace == "dune"
    assert (s.timeout_sec, s.retries, s.workers) == (30, 3, 4)


def test_reads_env(monkeypatch):
    monkeypatch.setenv("DUNE_API_KEY", "k1")
    monkeypatch.setenv("DUNE_API_URL", "http://localhost:8080/api/v1/")
    monkeypatch.setenv("DUNE_TEAM", "analytics")
    monkeypatch.setenv("DUNE_SYNC_WORKERS", "8")
    s = Settings.from_env()
    assert s.api_key == "k1"
    assert s.api_url == "http://localhost:8080/api/v1"
    assert s.team == "analytics"
    assert s.workers == 8


def test_terraform_alias_for_key(monkeypatch):
    monkeypatch.setenv("TF_VAR_dune_api_key", "tf-key")
    assert Settings.from_env().api_key == "tf-key"


def test_dotenv_file_is_loaded_without_overriding(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("DUNE_API_KEY=from-file\nDUNE_TEAM=file-team\n", encoding="utf-8")
    monkeypatch.setenv("DUNE_TEAM", "shell-team")
    s = Settings.from_env()
    assert s.api_key == "from-file"
    assert s.team == "shell-team"


@pytest.mark.parametrize("name,value", [
    ("DUNE_HTTP_TIMEOUT_SEC", "abc"),
    ("DUNE_HTTP_TIMEOUT_SEC", "0"),
    ("DUNE_SYNC_WORKERS", "0"),
    ("DUNE_HTTP_RETRIES", "-1"),
])
def test_invalid_numbers_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_overrides_and_requirements():
    s = Settings().with_overrides(team="t", state_file="x/state.json", workers=None)
    assert s.team == "t"
    assert s.state_file == Path("x/state.json")
    assert s.workers == 4
    assert s.require_team() == "t"
    assert Settings().require_team("other") == "other"
    with pytest.raises(ConfigurationError):
        Settings().require_team()
    with pytest.raises(CredentialError):
        Settings().require_credentials()
    Settings(api_key="k").require_credentials()
