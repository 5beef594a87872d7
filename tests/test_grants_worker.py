"""
Worker wiring and loop tests.

Why:
    `JIT_STORE` decides whether executions survive restarts; the builders must
    honour it. The loops must keep polling when idle and keep running when a
    single step fails.
"""
from __future__ import annotations

import asyncio

import pytest

from jitaccess.config import load_app_config
from jitaccess.grants import store_db, worker
from jitaccess.grants.store import InMemoryExecutionStore
from jitaccess.providers import WEBHOOK_PROVIDER_ID
from jitaccess.web import main
from tests.utils.fake_psycopg import install_fake_psycopg


class _StopLoop(Exception):
    pass


class _ScriptedOrchestrator:
    """Returns scripted `run_once` outcomes; an exception entry is raised."""

    worker_id = "scripted"

    def __init__(self, outcomes) -> None:
        self._outcomes = list(outcomes)
        self.calls = 0

    def run_once(self, *, now=None) -> bool:
        self.calls += 1
        if not self._outcomes:
            raise _StopLoop()
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_build_store_defaults_to_memory():
    assert isinstance(worker.build_store(load_app_config()), InMemoryExecutionStore)


def test_build_store_db_creates_schema(monkeypatch: pytest.MonkeyPatch):
    table = install_fake_psycopg(monkeypatch, store_db)
    monkeypatch.setenv("JIT_STORE", "db")
    monkeypatch.setenv("JIT_DATABASE_URL", "postgresql://jit@db/jit")

    store = worker.build_store(load_app_config())

    assert isinstance(store, store_db.DBExecutionStore)
    assert table.statements and table.statements[0].startswith("create table")


def test_build_orchestrator_routes_notifications_to_webhook(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JIT_WEBHOOK_URL", "https://hooks.example.com/jit")
    config = load_app_config()

    orchestrator = worker.build_orchestrator(config)

    assert orchestrator._notifier_id == WEBHOOK_PROVIDER_ID
    assert orchestrator.config == config.orchestrator


def test_run_forever_sleeps_only_when_idle(monkeypatch: pytest.MonkeyPatch):
    sleeps = []
    monkeypatch.setattr(worker.time, "sleep", lambda seconds: sleeps.append(seconds))
    orchestrator = _ScriptedOrchestrator([True, True, False, True])

    with pytest.raises(_StopLoop):
        worker.run_forever(orchestrator, poll_interval=0.25)

    assert orchestrator.calls == 5
    assert sleeps == [0.25]


@pytest.mark.anyio
async def test_embedded_worker_survives_failed_step_and_stops_on_cancel():
    orchestrator = _ScriptedOrchestrator([True, RuntimeError("store hiccup"), False] + [False] * 1000)

    task = asyncio.create_task(main.run_embedded_worker(orchestrator, poll_interval=0.001))
    while orchestrator.calls < 4:
        await asyncio.sleep(0.001)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert orchestrator.calls >= 4
