from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx


class ApiError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def _segment(value: str) -> str:
    return quote(str(value), safe="")


class MoneyLensClient:
    """Thin synchronous client for the MoneyLens HTTP API.

    Pass an existing `httpx.Client` (for example a FastAPI `TestClient`) to reuse
    its transport; otherwise one is created for `base_url`.
    """

    def __init__(self, base_url: str = "http://localhost:3001", http: httpx.Client | None = None, timeout: float = 10.0) -> None:
        self._owns_http = http is None
        self._http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "MoneyLensClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self._http.request(method, f"/api{path}", json=payload)
        if response.is_error:
            message = "Request failed"
            try:
                body = response.json()
                if isinstance(body, dict) and body.get("error"):
                    message = str(body["error"])
            except ValueError:
                message = response.text or message
            raise ApiError(message, response.status_code)
        return response.json()

    def register(self, login: str, password: str, **profile: Any) -> str:
        data = self._request("POST", "/register", {"login": login, "password": password, **profile})
        return data["login"]

    def login(self, login: str, password: str) -> dict[str, Any]:
        return self._request("POST", "/login", {"login": login, "password": password})["user"]

    def fetch_profile(self, login: str) -> dict[str, Any]:
        return self._request("GET", f"/users/{_segment(login)}")["user"]

    def update_profile(self, login: str, **fields: Any) -> dict[str, Any]:
        return self._request("PUT", f"/users/{_segment(login)}", fields)["user"]

    def fetch_state(self, login: str) -> dict[str, Any]:
        data = self._request("GET", f"/users/{_segment(login)}/state")
        return {key: data.get(key, []) for key in ("goals", "budgets", "accounts")}

    def update_state(self, login: str, **fields: Any) -> None:
        self._request("PUT", f"/users/{_segment(login)}/state", fields)

    def fetch_operations(self, login: str) -> list[dict[str, Any]]:
        return self._request("GET", f"/users/{_segment(login)}/operations")["operations"]

    def create_operation(self, login: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", f"/users/{_segment(login)}/operations", payload)["operation"]

    def update_operation(self, login: str, operation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        path = f"/users/{_segment(login)}/operations/{_segment(operation_id)}"
        return self._request("PUT", path, payload)["operation"]

    def delete_operation(self, login: str, operation_id: str) -> None:
        self._request("DELETE", f"/users/{_segment(login)}/operations/{_segment(operation_id)}")
