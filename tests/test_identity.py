import pytest

from dune_sync.core.errors import ConfigurationError, RemoteLogicError, RemoteNotFound, RemoteTimeout
from dune_sync.core.models import QueryDeclaration, ResolveMode, Visibility
from dune_sync.engine.identity import IdentityResolver, is_remembered


def _decl(name="Daily Count", sql="SELECT 1", query_id=None, visibility=Visibility.PRIVATE):
    return QueryDeclaration(key="daily", name=name, sql=sql, visibility=visibility, query_id=query_id)


@pytest.mark.parametrize("value,expected", [
    (None, False), ("", False), ("0", False), ("null", False), ("None", False),
    ("42", True), (" 42 ", True),
])
def test_is_remembered(value, expected):
    assert is_remembered(value) is expected


def test_empty_fields_rejected_before_any_call(fake_client):
    resolver = IdentityResolver(fake_client)
    with pytest.raises(ConfigurationError):
        resolver.resolve(_decl(name=""))
    with pytest.raises(ConfigurationError):
        resolver.resolve(_decl(sql="   "))
    assert fake_client.calls == []


def test_remembered_id_is_reused(fake_client):
    qid = fake_client.add_query("Other Name")
    res = IdentityResolver(fake_client).resolve(_decl(), remembered_id=qid)
    assert res.query_id == qid
    assert res.mode is ResolveMode.REUSED
    assert fake_client.count("search_queries_by_name") == 0
    assert fake_client.count("create_query") == 0


def test_declared_id_wins_over_state(fake_client):
    declared = fake_client.add_query("A")
    remembered = fake_client.add_query("B")
    res = IdentityResolver(fake_client).resolve(_decl(query_id=declared), remembered_id=remembered)
    assert res.query_id == declared


def test_archived_remembered_query_is_unarchived(fake_client):
    qid = fake_client.add_query("Daily Count", archived=True)
    res = IdentityResolver(fake_client).resolve(_decl(), remembered_id=qid)
    assert res.mode is ResolveMode.REUSED
    assert res.unarchived is True
    assert fake_client.queries[qid]["is_archived"] is False


def test_gone_remembered_id_falls_through_to_search(fake_client):
    found = fake_client.add_query("Daily Count")
    res = IdentityResolver(fake_client).resolve(_decl(), remembered_id="999999")
    assert res.query_id == found
    assert res.mode is ResolveMode.FOUND


def test_name_search_is_exact(fake_client):
    fake_client.add_query("daily count")
    fake_client.add_query("Daily Count (old)")
    res = IdentityResolver(fake_client).resolve(_decl())
    assert res.mode is ResolveMode.CREATED
    assert fake_client.count("create_query") == 1


def test_creates_with_declared_visibility(fake_client):
    res = IdentityResolver(fake_client).resolve(_decl(visibility=Visibility.PUBLIC))
    assert fake_client.queries[res.query_id]["is_private"] is False


def test_stable_across_passes(fake_client):
    resolver = IdentityResolver(fake_client)
    first = resolver.resolve(_decl())
    second = resolver.resolve(_decl(), remembered_id=first.query_id)
    third = resolver.resolve(_decl())
    assert first.query_id == second.query_id == third.query_id
    assert fake_client.count("create_query") == 1


def test_create_name_conflict_downgrades_to_found(fake_client):
    # Simulate a create that lost a race: the API says the name exists and a
    # second search sees the query.
    existing = {}

    original_search = fake_client.search_queries_by_name

    def search(name):
        result = original_search(name)
        if not existing:
            existing["id"] = fake_client.add_query(name)
        return result

    fake_client.search_queries_by_name = search
    fake_client.fail("create_query", RemoteLogicError("Query with that name already exists", status=400))

    res = IdentityResolver(fake_client).resolve(_decl())
    assert res.mode is ResolveMode.FOUND
    assert res.query_id == existing["id"]
    assert "already exists" in res.note


def test_other_logic_errors_propagate(fake_client):
    fake_client.fail("create_query", RemoteLogicError("invalid sql", status=400))
    with pytest.raises(RemoteLogicError):
        IdentityResolver(fake_client).resolve(_decl())


def test_transport_errors_propagate(fake_client):
    fake_client.fail("search_queries_by_name", RemoteTimeout("timed out"))
    with pytest.raises(RemoteTimeout):
        IdentityResolver(fake_client).resolve(_decl())


def test_create_does_not_exist_error_propagates(fake_client):
    fake_client.fail("create_query", RemoteLogicError("Query 1001 does not exist", status=400))
    with pytest.raises(RemoteLogicError):
        IdentityResolver(fake_client).resolve(_decl())
    assert fake_client.count("search_queries_by_name") == 1


def test_found_query_reports_archive_and_visibility(fake_client):
    qid = fake_client.add_query("Daily Count", archived=True, is_private=False)
    res = IdentityResolver(fake_client).resolve(_decl())
    assert res.mode is ResolveMode.FOUND
    assert res.query_id == qid
    assert res.archived is True
    assert res.unarchived is False
    assert res.is_private is False
    # restoring is left to the upserter
    assert fake_client.queries[qid]["is_archived"] is True


def test_search_skips_matches_that_vanished(fake_client):
    gone = fake_client.add_query("Daily Count")
    kept = fake_client.add_query("Daily Count")
    fake_client.fail("read_query", RemoteNotFound("Query not found", status=404), arg=gone)
    res = IdentityResolver(fake_client).resolve(_decl())
    assert res.query_id == kept
    assert res.mode is ResolveMode.FOUND
