from __future__ import annotations

from datetime import date

import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.persistence import MemoryKeyValueStore
from backend.app.storage import JsonStore
from backend.app.store import ProspectionStore

# A Wednesday; its Monday-start week runs 2026-10-19 .. 2026-10-25.
TODAY = date(2026, 10, 21)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("PERSISTENCE_ENABLED", "false")
    monkeypatch.delenv("PURGE_STALE_STAGE_VALUES", raising=False)
    app = create_app(clock=lambda: TODAY)
    return TestClient(app)


@pytest.fixture()
def store() -> ProspectionStore:
    return ProspectionStore(JsonStore(MemoryKeyValueStore()))


@pytest.fixture()
def today() -> date:
    return TODAY
