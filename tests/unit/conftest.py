"""Unit-test conftest: DB isolation safety net.

An ``autouse`` fixture resets the storage singletons and replaces the
engine and session accessors with guards that raise, so a unit test that
forgets to mock the database fails fast instead of hanging on a
connection attempt. Tests that need Postgres live in tests/integration/.
"""

from __future__ import annotations

import pytest

import matchday.storage as _storage_mod


def _install_db_guard(monkeypatch: pytest.MonkeyPatch | None = None) -> None:
    def _guarded_get_engine(settings=None):
        raise RuntimeError(
            "Unit test attempted a real DB connection via get_engine(). "
            "Mock the database dependency or use tests/integration/ for DB tests."
        )

    def _guarded_get_session_factory(settings=None):
        raise RuntimeError(
            "Unit test attempted a real DB connection via get_session_factory(). "
            "Mock the database dependency or use tests/integration/ for DB tests."
        )

    if monkeypatch:
        monkeypatch.setattr(_storage_mod, "get_engine", _guarded_get_engine)
        monkeypatch.setattr(_storage_mod, "get_session_factory", _guarded_get_session_factory)
    else:
        _storage_mod.get_engine = _guarded_get_engine
        _storage_mod.get_session_factory = _guarded_get_session_factory


def pytest_configure() -> None:
    """Install DB guards before unit test modules are imported."""
    _storage_mod._engine = None  # type: ignore[attr-defined]
    _storage_mod._session_factory = None  # type: ignore[attr-defined]
    _install_db_guard()


@pytest.fixture(autouse=True)
def _isolate_db(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(_storage_mod, "_engine", None)
    monkeypatch.setattr(_storage_mod, "_session_factory", None)
    _install_db_guard(monkeypatch)


@pytest.fixture
def api_app(mock_settings, monkeypatch):
    """Full app with settings patched in the modules that read them by name."""
    from matchday.api.rate_limit import limiter

    for module in (
        "matchday.api.main",
        "matchday.api.routes.system",
        "matchday.api.routes.topics",
        "matchday.api.routes.manifests",
        "matchday.api.routes.engine",
        "matchday.workflows.callback_url",
    ):
        monkeypatch.setattr(f"{module}.get_settings", lambda: mock_settings)
    limiter.reset()

    from matchday.api.main import create_app

    return create_app(mock_settings)


@pytest.fixture
async def api_client(api_app):
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as client:
        yield client
