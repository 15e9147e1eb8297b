"""
tests/conftest.py
"""
from __future__ import annotations

from pathlib import Path
from typing import Callable, Generator

import pytest
from flask.testing import FlaskClient

# The single-file app lives here:
from cloudnav import nav
from cloudnav.nav import app

PASSWORD = "correct horse battery"


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Every test gets its own SQLite file and a known admin password.
    """
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "DATABASE", str(tmp_path / "test.sqlite3"))
    monkeypatch.setitem(app.config, "STORE_BACKEND", "sqlite")
    monkeypatch.setitem(app.config, "PASSWORD", PASSWORD)
    monkeypatch.setitem(app.config, "SESSION_SECRET", "")
    monkeypatch.setitem(app.config, "USE_FAVICON_SERVICE", False)


@pytest.fixture(autouse=True)
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Login backoff never really sleeps; the requested delays are recorded."""
    calls: list[float] = []
    monkeypatch.setattr(nav, "sleep", calls.append)
    return calls


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    with app.test_client() as client:
        yield client


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    """A test client that already holds a valid session cookie."""
    rv = client.post("/api/login", json={"password": PASSWORD})
    assert rv.status_code == 200
    return client


@pytest.fixture
def seed() -> Callable[[dict], dict]:
    """Write a (normalized) document straight into the store."""

    def _seed(doc: dict) -> dict:
        with app.app_context():
            return nav.save_document(nav.get_store(), doc)

    return _seed


@pytest.fixture
def stored() -> Callable[[], dict]:
    """Read back whatever is in the store right now."""

    def _stored() -> dict:
        with app.app_context():
            return nav.get_store().load()

    return _stored


@pytest.fixture
def sample_doc() -> dict:
    return {
        "groups": [
            {"id": "g1", "name": "Work", "order": 0, "enabled": True},
            {"id": "g2", "name": "Fun", "order": 1, "enabled": True},
        ],
        "sections": [
            {"id": "s1", "groupId": "g1", "name": "Docs", "order": 0},
            {"id": "s2", "groupId": "g2", "name": "Games", "order": 0},
        ],
        "links": [
            {
                "id": "l1",
                "groupId": "g1",
                "sectionId": "s1",
                "title": "Python",
                "url": "https://docs.python.org",
                "order": 0,
            },
            {
                "id": "l2",
                "groupId": "g1",
                "title": "Flask",
                "url": "https://flask.palletsprojects.com",
                "order": 0,
            },
            {
                "id": "l3",
                "groupId": "g2",
                "title": "Chess",
                "url": "https://lichess.org",
                "order": 0,
            },
        ],
    }
