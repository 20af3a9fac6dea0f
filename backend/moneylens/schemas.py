import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .store import format_timestamp


class OperationType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def parse_operation_date(value: Any) -> str:
    """Parse an ISO-8601 string or epoch milliseconds into a UTC timestamp string."""
    if isinstance(value, bool):
        raise ValueError("invalid date")
    if isinstance(value, (int, float)):
        try:
            moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError("invalid date") from exc
        return format_timestamp(moment)
    if not isinstance(value, str):
        raise ValueError("invalid date")
    try:
        moment = datetime.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValueError("invalid date") from exc
    return format_timestamp(moment)


class ApiErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    ok: bool = True
    status: str


class OkResponse(BaseModel):
    ok: bool = True


class UserProfile(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    email: str = ""
    phone: str = ""

    @field_validator("name", "email", "phone", mode="before")
    @classmethod
    def blank_when_missing(cls, value: Any) -> str:
        return "" if value is None else str(value)


class PublicUser(BaseModel):
    login: str
    profile: UserProfile = Field(default_factory=UserProfile)


class RegisterRequest(BaseModel):
    login: Optional[str] = None
    password: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class RegisterResponse(BaseModel):
    ok: bool = True
    login: str


class LoginRequest(BaseModel):
    login: Optional[str] = None
    password: Optional[str] = None


class UserUpdate(BaseModel):
    password: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class UserResponse(BaseModel):
    ok: bool = True
    user: PublicUser


class StateUpdate(BaseModel):
    goals: Any = None
    budgets: Any = None
    accounts: Any = None


class StateResponse(BaseModel):
    ok: bool = True
    goals: list[Any]
    budgets: list[Any]
    accounts: list[Any]


class OperationPayload(BaseModel):
    """Incoming income/expense/transfer payload, coerced into canonical fields."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: Optional[OperationType] = Field(default=None, validate_default=True)
    amount: Optional[float] = Field(default=None, validate_default=True)
    category: str = "Uncategorized"
    note: str = ""
    date: Optional[str] = None
    account: Optional[str] = None
    accountFrom: Optional[str] = None
    accountTo: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def validate_id(cls, value: Any) -> Optional[str]:
        return _as_text(value) or None

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, value: Any) -> OperationType:
        normalized = value.strip().lower() if isinstance(value, str) else ""
        try:
            return OperationType(normalized)
        except ValueError:
            raise ValueError("invalid type") from None

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, value: Any) -> float:
        if isinstance(value, bool) or value is None:
            raise ValueError("amount must be positive number")
        try:
            amount = float(value.strip() if isinstance(value, str) else value)
        except (TypeError, ValueError, OverflowError):
            raise ValueError("amount must be positive number") from None
        if not math.isfinite(amount) or amount <= 0:
            raise ValueError("amount must be positive number")
        return amount

    @field_validator("category", mode="before")
    @classmethod
    def validate_category(cls, value: Any) -> str:
        return _as_text(value) or "Uncategorized"

    @field_validator("note", mode="before")
    @classmethod
    def validate_note(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, value: Any) -> Optional[str]:
        # falsy values mean "now"
        if value in (None, 0, False) or (isinstance(value, str) and not value.strip()):
            return None
        return parse_operation_date(value)

    @field_validator("account", "accountFrom", "accountTo", mode="before")
    @classmethod
    def validate_account_name(cls, value: Any) -> Optional[str]:
        return _as_text(value) or None

    @model_validator(mode="after")
    def validate_accounts(self) -> "OperationPayload":
        if self.type == OperationType.transfer:
            if not self.accountFrom or not self.accountTo or self.accountFrom == self.accountTo:
                raise ValueError("transfer requires different source and destination accounts")
            self.account = None
        else:
            if not self.account:
                raise ValueError("account is required for income/expense")
            self.accountFrom = None
            self.accountTo = None
        return self

    def to_fields(self, now: datetime) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "amount": self.amount,
            "category": self.category,
            "note": self.note,
            "date": self.date or format_timestamp(now),
            "account": self.account,
            "accountFrom": self.accountFrom,
            "accountTo": self.accountTo,
        }


class OperationRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: OperationType
    amount: float
    category: str
    note: str
    date: str
    account: Optional[str] = None
    accountFrom: Optional[str] = None
    accountTo: Optional[str] = None
    createdAt: str
    updatedAt: str


class OperationResponse(BaseModel):
    ok: bool = True
    operation: OperationRecord


class OperationListResponse(BaseModel):
    ok: bool = True
    operations: list[dict[str, Any]]
