import itertools
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from moneylens.main import create_app
from moneylens.persistence import JsonFilePersistence


class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)) -> None:
        self.start = start
        self._ticks = itertools.count()

    def __call__(self) -> datetime:
        return self.start + timedelta(seconds=next(self._ticks))


@pytest.fixture
def persistence(tmp_path) -> JsonFilePersistence:
    return JsonFilePersistence(tmp_path / "users", clock=StepClock())


@pytest.fixture
def client(persistence) -> TestClient:
    return TestClient(create_app(persistence))


@pytest.fixture
def alice(client) -> str:
    res = client.post("/api/register", json={"login": "Alice", "password": "secret", "name": "Alice"})
    assert res.status_code == 200
    return res.json()["login"]
