import secrets
import string
from datetime import datetime, timezone

DEFAULT_ACCOUNTS = ["Общий счет"]
_BASE36 = string.digits + string.ascii_lowercase


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def format_timestamp(moment: datetime) -> str:
    """Render an aware or naive (assumed UTC) datetime as `YYYY-MM-DDTHH:MM:SS.mmmZ`."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class InMemoryStore:
    def __init__(self) -> None:
        self.users: dict[str, dict] = {}

    @staticmethod
    def make_id(moment: datetime | None = None) -> str:
        moment = moment or InMemoryStore.now()
        millis = int(moment.timestamp() * 1000)
        suffix = "".join(secrets.choice(_BASE36) for _ in range(5))
        return to_base36(millis) + suffix

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)
