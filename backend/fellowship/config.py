import os
from pathlib import Path
from typing import Optional

DATA_DIR = Path(__file__).resolve().parents[1] / "data"


def normalize_env_value(value: str) -> str:
    normalized = value.strip()
    if len(normalized) >= 2 and normalized[0] == normalized[-1] and normalized[0] in {"'", '"'}:
        normalized = normalized[1:-1].strip()
    return normalized


def read_int_env(name: str, default: int, min_value: Optional[int] = None) -> int:
    try:
        parsed = int(normalize_env_value(os.getenv(name, str(default))))
    except ValueError:
        return default
    if min_value is not None and parsed < min_value:
        return default
    return parsed


def read_bool_env(name: str, default: bool) -> bool:
    raw = normalize_env_value(os.getenv(name, "")).lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def database_path() -> str:
    return os.getenv("DATABASE_PATH", str(DATA_DIR / "fellowship.sqlite3"))
