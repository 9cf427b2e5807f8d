from __future__ import annotations

import pytest

from modconsole import main
from modconsole.moderation.domain.container import build_runtime


class RecordingClient:
    instances: list["RecordingClient"] = []

    def __init__(self, *args, **kwargs) -> None:
        self.closed = False
        RecordingClient.instances.append(self)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def recording_http(monkeypatch):
    RecordingClient.instances = []
    monkeypatch.setattr(main.httpx, "AsyncClient", RecordingClient)
    monkeypatch.setattr(main, "obs_init", lambda: None)
    return RecordingClient


@pytest.mark.asyncio
async def test_startup_failure_still_closes_http_client(recording_http, push, store, monkeypatch) -> None:
    runtime = build_runtime(push=push, store=store, staff_ids=("admin-1",))
    stopped: list[bool] = []

    async def _broken_start() -> None:
        raise RuntimeError("configuration unavailable")

    async def _stop() -> None:
        stopped.append(True)

    monkeypatch.setattr(runtime, "start", _broken_start)
    monkeypatch.setattr(runtime, "stop", _stop)
    app = main.create_app(runtime)

    with pytest.raises(RuntimeError, match="configuration unavailable"):
        async with app.router.lifespan_context(app):
            pass

    assert [client.closed for client in recording_http.instances] == [True]
    assert stopped == [True]


@pytest.mark.asyncio
async def test_runtime_build_failure_still_closes_http_client(recording_http, monkeypatch) -> None:
    closed_pools: list[bool] = []

    async def _no_database(http):
        raise ConnectionError("postgres unavailable")

    async def _close_pool() -> None:
        closed_pools.append(True)

    monkeypatch.setattr(main, "_build_postgres_runtime", _no_database)
    monkeypatch.setattr(main.postgres, "close_pool", _close_pool)
    app = main.create_app()

    with pytest.raises(ConnectionError):
        async with app.router.lifespan_context(app):
            pass

    assert [client.closed for client in recording_http.instances] == [True]
    assert closed_pools == [True]


@pytest.mark.asyncio
async def test_clean_shutdown_stops_runtime_and_client(recording_http, push, store, monkeypatch) -> None:
    monkeypatch.setattr(main.settings, "moderation_workers_enabled", False)
    runtime = build_runtime(push=push, store=store, staff_ids=("admin-1",))
    app = main.create_app(runtime)

    async with app.router.lifespan_context(app):
        assert app.state.moderation is runtime
        assert app.state.moderation_scheduler is None

    assert recording_http.instances[0].closed is True
