import json

import pytest

from dune_sync.core.errors import ConfigurationError
from dune_sync.core.state import STATUS_ARCHIVED, StateRecord, StateStore


def test_in_memory_store_roundtrip():
    store = StateStore()
    store.put("q1", StateRecord(kind="query", remote_id="7", fingerprint="sha256:abc"))
    rec = store.get("q1")
    assert rec.remote_id == "7"
    assert rec.updated_at
    assert store.remembered_query_id("q1") == "7"
    store.save()  # no path: no-op


def test_remembered_id_only_for_queries():
    store = StateStore()
    store.put("mv1", StateRecord(kind="materialized_view", remote_id="7", full_name="dune.t.mv1"))
    assert store.remembered_query_id("mv1") is None
    assert store.remembered_query_id("missing") is None


def test_save_and_reload(tmp_path):
    path = tmp_path / "nested" / "state.json"
    store = StateStore(path)
    store.put("q1", StateRecord(kind="query", remote_id="7", status=STATUS_ARCHIVED))
    store.save()

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["version"] == 1
    assert data["resources"]["q1"]["status"] == "archived"
    assert not [p for p in path.parent.iterdir() if p.name.startswith(".state-")]

    reloaded = StateStore(path)
    assert reloaded.get("q1").status == STATUS_ARCHIVED
    assert reloaded.remove("q1").remote_id == "7"
    assert reloaded.all() == {}


def test_invalid_json_is_configuration_error(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        StateStore(path)


def test_malformed_records_are_skipped(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"version": 1, "resources": {"bad": "x", "ok": {"kind": "query", "remote_id": 5}}}),
                    encoding="utf-8")
    store = StateStore(path)
    assert list(store.all()) == ["ok"]
    assert store.get("ok").remote_id == "5"
