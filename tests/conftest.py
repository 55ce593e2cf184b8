import importlib
import sys
from pathlib import Path

import httpx
import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MOVIEREC_DB", str(db_path))
    import movierec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB, create the schema, and close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("MOVIEREC_DB", str(db_path))

    import movierec.config as config
    import movierec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


class MockSite:
    """
    Canned responses keyed by URL path, served through httpx.MockTransport.

    A route value may be a body string (200), a status code, a (status, body) pair,
    or an httpx exception class to raise. Unknown paths return 404.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.calls: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        resp = self.routes.get(path, 404)
        if isinstance(resp, type) and issubclass(resp, httpx.HTTPError):
            raise resp("simulated failure", request=request)
        if isinstance(resp, int):
            return httpx.Response(resp)
        if isinstance(resp, tuple):
            status, body = resp
            return httpx.Response(status, text=body)
        return httpx.Response(200, text=resp)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def mock_site():
    return MockSite
