import importlib

import pytest


def test_json_helpers_round_trip_bytes():
    import mintwatch.http as http

    data = http.dumps({"a": 1, "b": [1.5, None]})
    assert isinstance(data, bytes)
    assert http.loads(data) == {"a": 1, "b": [1.5, None]}


def test_connector_limit_env(monkeypatch):
    monkeypatch.setenv("MINTWATCH_HTTP_CONNECTOR_LIMIT", "5")
    import mintwatch.http as http

    http = importlib.reload(http)
    assert http.CONNECTOR_LIMIT == 5
    monkeypatch.delenv("MINTWATCH_HTTP_CONNECTOR_LIMIT")
    importlib.reload(http)


def test_timeout_env_falls_back_on_garbage(monkeypatch):
    import mintwatch.http as http

    monkeypatch.setenv("MINTWATCH_HTTP_TIMEOUT", "soon")
    assert http._timeout_from_env() == http.DEFAULT_TIMEOUT
    monkeypatch.setenv("MINTWATCH_HTTP_TIMEOUT", "2.5")
    assert http._timeout_from_env() == 2.5


@pytest.mark.anyio
async def test_get_session_singleton():
    import mintwatch.http as http

    await http.close_session()
    s1 = await http.get_session()
    s2 = await http.get_session()
    assert s1 is s2
    await http.close_session()
    assert s1.closed
