import logging
import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_DATA_DIR = Path(__file__).resolve().parents[1] / "users"


@dataclass(frozen=True)
class Settings:
    storage_backend: str = os.getenv("STORAGE_BACKEND", "file").strip().lower()
    data_dir: str = os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR))
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "3001"))
    max_body_bytes: int = int(os.getenv("MAX_BODY_BYTES", "1000000"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


settings = Settings()
