from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from ..client import ApiError, MoneyLensClient
from ..store import DEFAULT_ACCOUNTS, format_timestamp

logger = logging.getLogger(__name__)

Listener = Callable[["UserLedger"], None]
UNCATEGORIZED_LABEL = "Другое"


@dataclass
class AccountBalance:
    name: str
    balance: float = 0.0
    inflow: float = 0.0
    outflow: float = 0.0

    @property
    def change(self) -> int:
        """Net flow as a rounded percentage of total flow through the account."""
        total = self.inflow + self.outflow
        if total == 0:
            return 0
        return round((self.inflow - self.outflow) / total * 100)


def _amount(operation: dict[str, Any]) -> float:
    try:
        return float(operation.get("amount") or 0)
    except (TypeError, ValueError):
        return 0.0


def _date_key(operation: dict[str, Any]) -> float:
    raw = operation.get("date")
    if not isinstance(raw, str):
        return float("-inf")
    try:
        moment = datetime.fromisoformat(raw)
    except ValueError:
        return float("-inf")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


class UserLedger:
    """Client-side cache of one user's operations and account names.

    Listeners registered with `subscribe` are called with the ledger after every
    change, including failed requests (so they can read `error`).
    """

    def __init__(self, client: MoneyLensClient, login: str) -> None:
        self.client = client
        self.login = login
        self.operations: list[dict[str, Any]] = []
        self.accounts: list[str] = list(DEFAULT_ACCOUNTS)
        self.loading = False
        self.error: str | None = None
        self.last_sync: str | None = None
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def clear(self) -> None:
        self.operations = []
        self.accounts = list(DEFAULT_ACCOUNTS)
        self.error = None
        self.last_sync = None
        self._notify()

    def load(self) -> None:
        self.load_accounts()
        self.load_operations()

    def load_accounts(self) -> None:
        try:
            accounts = self.client.fetch_state(self.login).get("accounts")
        except ApiError as exc:
            logger.warning("Could not load accounts for %s: %s", self.login, exc.message)
            accounts = None
        self.accounts = list(accounts) if isinstance(accounts, list) and accounts else list(DEFAULT_ACCOUNTS)
        self._notify()

    def save_accounts(self) -> None:
        try:
            self.client.update_state(self.login, accounts=self.accounts)
        except ApiError as exc:
            logger.warning("Could not save accounts for %s: %s", self.login, exc.message)

    def _run(self, action: Callable[[], Any]) -> Any:
        self.loading = True
        self.error = None
        self._notify()
        try:
            return action()
        except ApiError as exc:
            self.error = exc.message
            raise
        finally:
            self.loading = False
            self._notify()

    def load_operations(self) -> list[dict[str, Any]]:
        def action() -> list[dict[str, Any]]:
            operations = self.client.fetch_operations(self.login)
            self.operations = operations if isinstance(operations, list) else []
            self.last_sync = format_timestamp(datetime.now(timezone.utc))
            return self.operations

        return self._run(action)

    def add_operation(self, payload: dict[str, Any]) -> dict[str, Any]:
        def action() -> dict[str, Any]:
            operation = self.client.create_operation(self.login, payload)
            self.operations = [*self.operations, operation]
            self._remember_accounts(operation)
            return operation

        return self._run(action)

    def update_operation(self, operation_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        def action() -> dict[str, Any]:
            operation = self.client.update_operation(self.login, operation_id, payload)
            self.operations = [operation if op.get("id") == operation_id else op for op in self.operations]
            self._remember_accounts(operation)
            return operation

        return self._run(action)

    def delete_operation(self, operation_id: str) -> None:
        def action() -> None:
            self.client.delete_operation(self.login, operation_id)
            self.operations = [op for op in self.operations if op.get("id") != operation_id]

        self._run(action)

    def _remember_accounts(self, operation: dict[str, Any]) -> None:
        for key in ("account", "accountFrom", "accountTo"):
            if operation.get(key):
                self.add_account_name(operation[key])

    def add_account_name(self, name: str | None) -> None:
        normalized = (name or "").strip()
        if not normalized or normalized in self.accounts:
            return
        self.accounts = [*self.accounts, normalized]
        self.save_accounts()
        self._notify()

    def remove_account_name(self, name: str | None) -> None:
        normalized = (name or "").strip()
        if not normalized or normalized not in self.accounts:
            return
        # never empty, same as the stored list
        self.accounts = [n for n in self.accounts if n != normalized] or list(DEFAULT_ACCOUNTS)
        self.save_accounts()
        self._notify()

    def delete_account(self, name: str | None) -> None:
        """Delete every operation touching the account, then drop the name."""
        normalized = (name or "").strip()
        if not normalized:
            return
        doomed = [
            op["id"]
            for op in self.operations
            if normalized in (op.get("account"), op.get("accountFrom"), op.get("accountTo"))
        ]
        for operation_id in doomed:
            self.delete_operation(operation_id)
        self.remove_account_name(normalized)

    @property
    def sorted_operations(self) -> list[dict[str, Any]]:
        return sorted(self.operations, key=_date_key, reverse=True)

    @property
    def recent_operations(self) -> list[dict[str, Any]]:
        return self.sorted_operations[:6]

    @property
    def totals(self) -> dict[str, float]:
        totals = {"income": 0.0, "expense": 0.0}
        for op in self.operations:
            if op.get("type") in totals:
                totals[op["type"]] += _amount(op)
        return totals

    @property
    def account_balances(self) -> list[AccountBalance]:
        balances: dict[str, AccountBalance] = {name: AccountBalance(name) for name in self.accounts}

        def upsert(name: str | None) -> AccountBalance | None:
            if not name:
                return None
            return balances.setdefault(name, AccountBalance(name))

        for op in self.operations:
            amount = _amount(op)
            kind = op.get("type")
            if kind == "income":
                acc = upsert(op.get("account"))
                if acc:
                    acc.balance += amount
                    acc.inflow += amount
            elif kind == "expense":
                acc = upsert(op.get("account"))
                if acc:
                    acc.balance -= amount
                    acc.outflow += amount
            elif kind == "transfer":
                source = upsert(op.get("accountFrom"))
                target = upsert(op.get("accountTo"))
                if source:
                    source.balance -= amount
                    source.outflow += amount
                if target:
                    target.balance += amount
                    target.inflow += amount
        return sorted(balances.values(), key=lambda acc: acc.balance, reverse=True)

    @property
    def total_balance(self) -> float:
        return sum(acc.balance for acc in self.account_balances)

    @property
    def category_totals(self) -> list[tuple[str, float]]:
        sums: dict[str, float] = {}
        for op in self.operations:
            if op.get("type") != "expense":
                continue
            key = op.get("category") or UNCATEGORIZED_LABEL
            sums[key] = sums.get(key, 0.0) + _amount(op)
        return sorted(sums.items(), key=lambda item: item[1], reverse=True)
