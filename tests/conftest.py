from __future__ import annotations

import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from dds_ai import app_db


class ScriptedSession:
    """Provider session replaying scripted replies: (fragments, error_raised_after_them)."""

    def __init__(self, scripts: list[tuple[list[str], Exception | None]]) -> None:
        self.scripts = list(scripts)
        self.sent: list[str] = []
        self.images: list[dict[str, str] | None] = []
        self.closed = 0

    async def send_and_stream(self, text: str, *, image: dict[str, str] | None = None):
        self.sent.append(text)
        self.images.append(image)
        fragments, error = self.scripts.pop(0) if self.scripts else ([], None)
        try:
            for fragment in fragments:
                yield fragment
            if error is not None:
                raise error
        finally:
            self.closed += 1


class ScriptedProvider:
    def __init__(self, *scripts: tuple[list[str], Exception | None]) -> None:
        self.session = ScriptedSession(list(scripts))
        self.histories: list[list[dict[str, Any]]] = []

    def start_session(self, history: list[dict[str, Any]]) -> ScriptedSession:
        self.histories.append(list(history))
        return self.session


def parse_sse(body: str) -> list[tuple[str, dict[str, Any]]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = block.strip().splitlines()
        if len(lines) < 2:
            continue
        event = lines[0][len("event: ") :]
        data = json.loads(lines[1][len("data: ") :])
        events.append((event, data))
    return events


@pytest.fixture
def db(tmp_path, monkeypatch):
    path = tmp_path / "app.sqlite"
    monkeypatch.setattr(app_db, "APP_DB_PATH", path)
    app_db.init_db()
    return path


@pytest.fixture
def client(db):
    from dds_ai.main import app

    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def signup_headers(client: TestClient, email: str = "ada@example.com", name: str = "Ada") -> dict[str, str]:
    resp = client.post("/api/auth/signup", json={"email": email, "password": "secret1", "name": name})
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}
