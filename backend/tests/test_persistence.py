import json
from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from moneylens.config import Settings
from moneylens.main import create_app
from moneylens.persistence import (
    InMemoryPersistence,
    JsonFilePersistence,
    StorageError,
    ensure_user_defaults,
    get_persistence,
)
from moneylens.schemas import OperationPayload


def test_ensure_user_defaults_backfills_missing_fields() -> None:
    data = ensure_user_defaults({"login": "x", "accounts": [], "goals": "junk"})
    assert data["operations"] == []
    assert data["goals"] == []
    assert data["budgets"] == []
    assert data["accounts"] == ["Общий счет"]


def test_user_file_is_pretty_printed_utf8(persistence) -> None:
    persistence.register_user("erin", "pw", name="Эрин")
    raw = persistence.user_file("erin").read_text(encoding="utf-8")
    assert raw.startswith('{\n  "login": "erin"')
    assert "Эрин" in raw
    assert "Общий счет" in raw


def test_legacy_document_is_backfilled_on_load(persistence) -> None:
    persistence.data_dir.mkdir(parents=True)
    persistence.user_file("old").write_text(
        json.dumps({"login": "old", "password": "pw", "profile": {"name": "Old"}, "operations": []}),
        encoding="utf-8",
    )
    data = persistence.load_user("old")
    assert data["accounts"] == ["Общий счет"]
    assert data["goals"] == [] and data["budgets"] == []


def test_missing_user_is_not_found(persistence) -> None:
    with pytest.raises(HTTPException) as exc_info:
        persistence.load_user("nobody")
    assert exc_info.value.status_code == 404


def test_corrupt_document_is_a_storage_error(persistence) -> None:
    persistence.data_dir.mkdir(parents=True)
    persistence.user_file("broken").write_text("{oops", encoding="utf-8")
    with pytest.raises(StorageError):
        persistence.load_user("broken")


def test_corrupt_document_returns_generic_500(persistence, client) -> None:
    persistence.data_dir.mkdir(parents=True)
    persistence.user_file("broken").write_text("[1, 2", encoding="utf-8")
    res = client.get("/api/users/broken/operations")
    assert res.status_code == 500
    assert res.json() == {"error": "internal error"}


def test_unexpected_error_returns_generic_500(persistence, monkeypatch) -> None:
    def explode(login):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(persistence, "get_user", explode)
    client = TestClient(create_app(persistence), raise_server_exceptions=False)
    res = client.get("/api/users/anyone", headers={"Origin": "http://localhost:5173"})
    assert res.status_code == 500
    assert res.json() == {"error": "internal error"}
    assert res.headers["access-control-allow-origin"] == "*"


def test_concurrent_creates_are_serialized(persistence) -> None:
    persistence.register_user("busy", "pw")
    payload = OperationPayload.model_validate({"type": "expense", "amount": 1, "account": "Cash"})

    with ThreadPoolExecutor(max_workers=8) as pool:
        created = list(pool.map(lambda _: persistence.create_operation("busy", payload), range(40)))

    stored = persistence.list_operations("busy")
    assert len(stored) == 40
    assert {op["id"] for op in stored} == {op["id"] for op in created}


def test_in_memory_backend_isolates_documents() -> None:
    memory = InMemoryPersistence()
    memory.register_user("mem", "pw")
    data = memory.load_user("mem")
    data["accounts"].append("Leaked")
    assert memory.load_user("mem")["accounts"] == ["Общий счет"]

    with pytest.raises(HTTPException) as exc_info:
        memory.register_user("mem", "pw")
    assert exc_info.value.status_code == 409


def test_in_memory_backend_serves_the_api() -> None:
    client = TestClient(create_app(InMemoryPersistence()))
    assert client.post("/api/register", json={"login": "m", "password": "pw"}).status_code == 200
    assert client.post("/api/users/m/operations", json={"type": "income", "amount": 1, "account": "A"}).status_code == 200
    assert len(client.get("/api/users/m/operations").json()["operations"]) == 1


def test_get_persistence_uses_configured_backend(tmp_path) -> None:
    assert isinstance(get_persistence(Settings(storage_backend="memory")), InMemoryPersistence)
    store = get_persistence(Settings(storage_backend="file", data_dir=str(tmp_path)))
    assert isinstance(store, JsonFilePersistence)
    assert store.data_dir == tmp_path
