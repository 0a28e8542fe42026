import pytest

from dune_sync.core.errors import ConfigurationError, RemoteLogicError, UnresolvedDependencyError
from dune_sync.core.models import MaterializedViewDeclaration, PerformanceTier, ResolvedQuery, ResolveMode
from dune_sync.engine.matviews import MaterializedViewUpserter, view_full_name


def _view(cron="0 */1 * * *"):
    return MaterializedViewDeclaration(key="result_daily", query="daily", cron=cron, tier=PerformanceTier.LARGE)


def _resolved(query_id):
    return ResolvedQuery("daily", query_id, "sha256:0", f"query_{query_id}", ResolveMode.CREATED)


def test_full_name():
    assert view_full_name("dune", "analytics", "result_daily") == "dune.analytics.result_daily"
    up = MaterializedViewUpserter(object(), team="analytics")
    assert up.full_name("x") == "dune.analytics.x"


def test_team_is_required(fake_client):
    with pytest.raises(ConfigurationError):
        MaterializedViewUpserter(fake_client, team="")


def test_unresolved_dependency_is_fatal(fake_client):
    up = MaterializedViewUpserter(fake_client, team="analytics")
    with pytest.raises(UnresolvedDependencyError):
        up.converge(_view(), None)
    with pytest.raises(UnresolvedDependencyError):
        up.converge(_view(), _resolved(""))
    assert fake_client.calls == []


def test_upsert_sends_declared_parameters(fake_client):
    qid = fake_client.add_query("Daily Count")
    conv = MaterializedViewUpserter(fake_client, team="analytics").converge(_view(), _resolved(qid))
    assert conv.full_name == "dune.analytics.result_daily"
    assert conv.query_id == qid
    assert conv.created is True
    assert conv.note.startswith("refresh ")
    stored = fake_client.views["dune.analytics.result_daily"]
    assert stored["cron_schedule"] == "0 */1 * * *"
    assert stored["tier"] == "large"


def test_unchanged_upsert_schedules_no_refresh(fake_client):
    qid = fake_client.add_query("Daily Count")
    up = MaterializedViewUpserter(fake_client, team="analytics")
    up.converge(_view(), _resolved(qid))
    second = up.converge(_view(), _resolved(qid))
    assert second.note == ""


def test_already_exists_is_acknowledged(fake_client):
    qid = fake_client.add_query("Daily Count")
    fake_client.fail("upsert_materialized_view", RemoteLogicError("materialized view already exists", status=400))
    conv = MaterializedViewUpserter(fake_client, team="analytics").converge(_view(), _resolved(qid))
    assert conv.created is False
    assert conv.note == "already exists"


def test_other_logic_errors_propagate(fake_client):
    fake_client.fail("upsert_materialized_view", RemoteLogicError("invalid cron", status=400))
    with pytest.raises(RemoteLogicError):
        MaterializedViewUpserter(fake_client, team="analytics").converge(_view(), _resolved("1"))


@pytest.mark.parametrize("message,status", [
    ("Query 1001 does not exist", 400),
    ("source query doesn't exist", 400),
    ("query not found", 400),
])
def test_missing_source_is_not_a_name_conflict(fake_client, message, status):
    fake_client.fail("upsert_materialized_view", RemoteLogicError(message, status=status))
    with pytest.raises(RemoteLogicError):
        MaterializedViewUpserter(fake_client, team="analytics").converge(_view(), _resolved("1001"))


def test_conflict_status_is_acknowledged(fake_client):
    qid = fake_client.add_query("Daily Count")
    fake_client.fail("upsert_materialized_view", RemoteLogicError("conflict", status=409))
    conv = MaterializedViewUpserter(fake_client, team="analytics").converge(_view(), _resolved(qid))
    assert conv.created is False
