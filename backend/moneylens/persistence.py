from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

from fastapi import HTTPException

from .auth_utils import clean_password, password_matches
from .config import Settings, settings
from .schemas import OperationPayload, StateUpdate, UserUpdate
from .store import DEFAULT_ACCOUNTS, InMemoryStore, format_timestamp

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a user document cannot be read or written for reasons other than absence."""


def ensure_user_defaults(data: dict[str, Any]) -> dict[str, Any]:
    for key in ("operations", "goals", "budgets"):
        if not isinstance(data.get(key), list):
            data[key] = []
    if not isinstance(data.get("accounts"), list) or not data["accounts"]:
        data["accounts"] = list(DEFAULT_ACCOUNTS)
    return data


def public_user(data: dict[str, Any]) -> dict[str, Any]:
    profile = data.get("profile")
    return {"login": data.get("login"), "profile": profile if isinstance(profile, dict) else {}}


class Persistence:
    """User-document operations shared by every backend.

    Subclasses supply `_read`, `_write` and `_create`. Every load-mutate-save
    sequence for a login runs under that login's lock, so concurrent requests for
    one user are applied one after another instead of overwriting each other.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or InMemoryStore.now
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _read(self, login: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _write(self, login: str, data: dict[str, Any]) -> None:
        raise NotImplementedError

    def _create(self, login: str, data: dict[str, Any]) -> bool:
        """Store a new document; return False when the login is taken."""
        raise NotImplementedError

    @contextmanager
    def locked(self, login: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(login, threading.RLock())
        with lock:
            yield

    def load_user(self, login: str) -> dict[str, Any]:
        data = self._read(login)
        if data is None:
            raise HTTPException(status_code=404, detail="user not found")
        return ensure_user_defaults(data)

    def save_user(self, login: str, data: dict[str, Any]) -> None:
        self._write(login, data)

    def register_user(
        self,
        login: str,
        password: str,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> dict[str, Any]:
        profile = {"name": name or "", "email": email or "", "phone": phone or ""}
        record = ensure_user_defaults({"login": login, "password": password, "profile": profile})
        with self.locked(login):
            if not self._create(login, record):
                raise HTTPException(status_code=409, detail="user already exists")
        logger.info("Registered user %s", login)
        return record

    def authenticate_user(self, login: str, password: str) -> dict[str, Any]:
        data = self._read(login)
        if data is None:
            raise HTTPException(status_code=404, detail="login not found")
        if not password_matches(password, data.get("password")):
            logger.warning("Password mismatch for %s", login)
            raise HTTPException(status_code=401, detail="wrong password")
        return public_user(data)

    def get_user(self, login: str) -> dict[str, Any]:
        return public_user(self.load_user(login))

    def update_user(self, login: str, payload: UserUpdate) -> dict[str, Any]:
        password = clean_password(payload.password)
        with self.locked(login):
            stored = self._read(login)
            if stored is None:
                if password is None:
                    raise HTTPException(status_code=404, detail="user not found")
                logger.info("Creating user %s from profile update", login)
                stored = {"login": login, "password": password, "profile": {}}
            stored = ensure_user_defaults(stored)
            profile = stored.get("profile") if isinstance(stored.get("profile"), dict) else {}
            updated = {
                "login": stored.get("login") or login,
                "password": password or stored.get("password"),
                "profile": {
                    "name": payload.name if payload.name is not None else profile.get("name", ""),
                    "email": payload.email if payload.email is not None else profile.get("email", ""),
                    "phone": payload.phone if payload.phone is not None else profile.get("phone", ""),
                },
                "operations": stored["operations"],
                "goals": stored["goals"],
                "budgets": stored["budgets"],
                "accounts": stored["accounts"],
            }
            self.save_user(login, updated)
        return public_user(updated)

    def get_state(self, login: str) -> dict[str, Any]:
        data = self.load_user(login)
        return {"goals": data["goals"], "budgets": data["budgets"], "accounts": data["accounts"]}

    def update_state(self, login: str, payload: StateUpdate) -> dict[str, Any]:
        with self.locked(login):
            data = self.load_user(login)
            if isinstance(payload.goals, list):
                data["goals"] = payload.goals
            if isinstance(payload.budgets, list):
                data["budgets"] = payload.budgets
            if isinstance(payload.accounts, list):
                data["accounts"] = payload.accounts or list(DEFAULT_ACCOUNTS)
            self.save_user(login, data)
        return {"goals": data["goals"], "budgets": data["budgets"], "accounts": data["accounts"]}

    def list_operations(self, login: str) -> list[dict[str, Any]]:
        return self.load_user(login)["operations"]

    def create_operation(self, login: str, payload: OperationPayload) -> dict[str, Any]:
        now = self._clock()
        with self.locked(login):
            data = self.load_user(login)
            taken = {op.get("id") for op in data["operations"] if isinstance(op, dict)}
            if payload.id is not None:
                if payload.id in taken:
                    raise HTTPException(status_code=409, detail=f"operation already exists: {payload.id}")
                operation_id = payload.id
            else:
                operation_id = InMemoryStore.make_id(now)
                while operation_id in taken:
                    operation_id = InMemoryStore.make_id(now)
            stamp = format_timestamp(now)
            operation = {**payload.to_fields(now), "id": operation_id, "createdAt": stamp, "updatedAt": stamp}
            data["operations"].append(operation)
            self.save_user(login, data)
        logger.info("Created %s operation %s for %s", operation["type"], operation_id, login)
        return operation

    def update_operation(self, login: str, operation_id: str, payload: OperationPayload) -> dict[str, Any]:
        now = self._clock()
        with self.locked(login):
            data = self.load_user(login)
            operations = data["operations"]
            idx = next(
                (i for i, op in enumerate(operations) if isinstance(op, dict) and op.get("id") == operation_id),
                None,
            )
            if idx is None:
                raise HTTPException(status_code=404, detail="operation not found")
            updated = {**operations[idx], **payload.to_fields(now), "updatedAt": format_timestamp(now), "id": operation_id}
            operations[idx] = updated
            self.save_user(login, data)
        logger.info("Updated operation %s for %s", operation_id, login)
        return updated

    def delete_operation(self, login: str, operation_id: str) -> None:
        with self.locked(login):
            data = self.load_user(login)
            remaining = [op for op in data["operations"] if not (isinstance(op, dict) and op.get("id") == operation_id)]
            if len(remaining) == len(data["operations"]):
                raise HTTPException(status_code=404, detail="operation not found")
            data["operations"] = remaining
            self.save_user(login, data)
        logger.info("Deleted operation %s for %s", operation_id, login)


class InMemoryPersistence(Persistence):
    def __init__(self, store: InMemoryStore | None = None, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock)
        self.store = store or InMemoryStore()

    def _read(self, login: str) -> dict[str, Any] | None:
        data = self.store.users.get(login)
        return copy.deepcopy(data) if data is not None else None

    def _write(self, login: str, data: dict[str, Any]) -> None:
        self.store.users[login] = copy.deepcopy(data)

    def _create(self, login: str, data: dict[str, Any]) -> bool:
        if login in self.store.users:
            return False
        self._write(login, data)
        return True


class JsonFilePersistence(Persistence):
    """One pretty-printed JSON document per login, fully rewritten on every save."""

    def __init__(self, data_dir: str | Path, clock: Callable[[], datetime] | None = None) -> None:
        super().__init__(clock)
        self.data_dir = Path(data_dir)

    def user_file(self, login: str) -> Path:
        return self.data_dir / f"{login}.json"

    @staticmethod
    def _dump(data: dict[str, Any]) -> str:
        return json.dumps(data, indent=2, ensure_ascii=False)

    def _read(self, login: str) -> dict[str, Any] | None:
        path = self.user_file(login)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as exc:
            raise StorageError(f"cannot read {path}") from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"corrupt user document {path}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"user document {path} is not an object")
        return data

    def _write(self, login: str, data: dict[str, Any]) -> None:
        path = self.user_file(login)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(self._dump(data), encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"cannot write {path}") from exc

    def _create(self, login: str, data: dict[str, Any]) -> bool:
        path = self.user_file(login)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with path.open("x", encoding="utf-8") as fh:
                fh.write(self._dump(data))
        except FileExistsError:
            return False
        except OSError as exc:
            raise StorageError(f"cannot create {path}") from exc
        return True


def get_persistence(config: Settings = settings) -> Persistence:
    if config.storage_backend == "memory":
        return InMemoryPersistence()
    return JsonFilePersistence(config.data_dir)
