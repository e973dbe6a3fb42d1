"""
test_import_safety.py — Import and wiring checks.

Verifies that:
  1. Every engine, repository and worker module imports cleanly (no DB
     connection is made at import time).
  2. The Celery task is registered under its public name and the app has no
     beat schedule.
  3. The JSON log formatter carries the engine's structured extras.
  4. The timing decorators preserve return values and log duration_ms.
  5. Table creation is skipped without a database and the task runs in one
     committed unit of work.

No database, network, or broker is required.
"""

import importlib
import json
import logging

import pytest


ENGINE_MODULES = [
    "app.config",
    "app.services.errors",
    "app.services.expression_engine",
    "app.services.rule_snapshot",
    "app.services.eligibility_engine",
    "app.services.component_resolver",
    "app.services.labor_engine",
    "app.services.pricing_cascade",
    "app.services.labor_cost_cache",
    "app.services.configurator",
    "app.services.logging_config",
    "app.services.perf_monitor",
    "app.models.rule_schema",
    "app.models.orm_models",
    "app.db",
    "app.db.rule_repository",
    "app.workers.celery_app",
    "app.workers.tasks",
]


class TestModuleImports:

    @pytest.mark.parametrize("name", ENGINE_MODULES)
    def test_module_imports(self, name):
        assert importlib.import_module(name) is not None


class TestWorkerWiring:

    def test_task_name(self):
        from app.workers.tasks import recompute_labor_costs
        assert recompute_labor_costs.name == "tasks.recompute_labor_costs"

    def test_no_beat_schedule(self):
        from app.workers.celery_app import celery_app
        assert not celery_app.conf.beat_schedule


class TestLogging:

    def test_json_formatter_includes_extras(self):
        from app.services.logging_config import JSONFormatter
        record = logging.LogRecord(
            "fence-config.eligibility", logging.DEBUG, __file__, 10, "Resolved %d material(s)", (3,), None,
        )
        record.product_type = "wood_vertical"
        record.duration_ms = 1.25
        payload = json.loads(JSONFormatter().format(record))
        assert payload["message"] == "Resolved 3 material(s)"
        assert payload["product_type"] == "wood_vertical"
        assert payload["duration_ms"] == 1.25
        assert payload["level"] == "DEBUG"

    def test_setup_logging_replaces_handlers(self):
        from app.services.logging_config import JSONFormatter, setup_logging
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(level="debug", json_output=True)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            root.handlers = saved_handlers
            root.setLevel(saved_level)


class TestTiming:

    def test_timed_logs_duration(self, caplog):
        from app.services.perf_monitor import timed

        @timed
        def add(a, b):
            return a + b

        with caplog.at_level(logging.DEBUG, logger="fence-config.perf"):
            assert add(2, 3) == 5
        assert any(hasattr(r, "duration_ms") for r in caplog.records)

    def test_timed_async_returns_value(self):
        import asyncio
        from app.services.perf_monitor import timed_async

        @timed_async
        async def answer():
            return 42

        assert asyncio.run(answer()) == 42


class TestDatabaseWiring:

    def test_init_db_skipped_without_database_url(self, monkeypatch):
        import asyncio
        from app import config
        from app.db import init_db
        monkeypatch.setattr(config, "DATABASE_URL", "")
        assert asyncio.run(init_db()) is None

    def test_session_scope_commits(self, monkeypatch):
        import asyncio
        import app.db as db

        session = _RecordingSession()
        monkeypatch.setattr(db, "AsyncSessionLocal", lambda: session)

        async def work():
            async with db.session_scope() as s:
                assert s is session

        asyncio.run(work())
        assert session.events == ["commit", "close"]

    def test_session_scope_rolls_back(self, monkeypatch):
        import asyncio
        import app.db as db

        session = _RecordingSession()
        monkeypatch.setattr(db, "AsyncSessionLocal", lambda: session)

        async def work():
            async with db.session_scope():
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(work())
        assert session.events == ["rollback", "close"]

    def test_recompute_runs_in_session_scope(self, monkeypatch):
        import asyncio
        import app.db as db
        import app.services.labor_cost_cache as cache
        from app.workers.tasks import _recompute

        session = _RecordingSession()
        monkeypatch.setattr(db, "AsyncSessionLocal", lambda: session)

        async def fake_refresh(rules, store, product_type, business_unit_id):
            assert rules.session is session and store.session is session
            return cache.RecomputeSummary(product_type, business_unit_id, "f" * 64, written=2)

        monkeypatch.setattr(cache, "refresh_labor_costs", fake_refresh)
        result = asyncio.run(_recompute("wood_vertical", "bu-1"))
        assert result["written"] == 2
        assert session.events == ["commit", "close"]

    def test_worker_creates_tables_on_start(self, monkeypatch):
        import app.db as db
        from app.workers.celery_app import _create_tables

        events = []

        async def fake_init_db():
            events.append("create_all")

        class _Engine:
            async def dispose(self):
                events.append("dispose")

        monkeypatch.setattr(db, "init_db", fake_init_db)
        monkeypatch.setattr(db, "engine", _Engine())
        _create_tables()
        assert events == ["create_all", "dispose"]


class _RecordingSession:
    """Async context-manager session that records commit / rollback / close."""

    def __init__(self):
        self.events = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.events.append("close")
        return False

    async def commit(self):
        self.events.append("commit")

    async def rollback(self):
        self.events.append("rollback")
