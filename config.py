import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# Standard half-hour grid shown to teachers: 09:00 up to and including 16:00
DAY_START_HOUR = 9
DAY_END_HOUR = 16
SLOT_MINUTES = 30


def _parse_tokens(raw: str) -> Dict[str, str]:
    """Parses "Daemen:abc,Martina:def" into {"Daemen": "abc", "Martina": "def"}."""
    tokens = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        name, _, token = pair.partition(":")
        if not token:
            raise ValueError(f"TEACHER_TOKENS entry '{pair}' must look like Name:token")
        tokens[name.strip()] = token.strip()
    return tokens


def _check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"SLOT_TIMEZONE '{name}' is not a known IANA time zone")
    return name


@dataclass
class Settings:
    database_url: Optional[str] = None
    store_backend: str = "sql"
    ledger_timeout: float = 5.0
    sql_echo: bool = False
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    teacher_tokens: Dict[str, str] = field(default_factory=dict)
    slot_timezone: str = "Europe/Amsterdam"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ.get("DATABASE_URL"),
            store_backend=os.environ.get("STORE_BACKEND", "sql").lower(),
            ledger_timeout=float(os.environ.get("LEDGER_TIMEOUT", "5")),
            sql_echo=os.environ.get("SQL_ECHO", "false").lower() in ("1", "true", "yes"),
            cors_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()],
            teacher_tokens=_parse_tokens(os.environ.get("TEACHER_TOKENS", "")),
            slot_timezone=_check_timezone(os.environ.get("SLOT_TIMEZONE", "Europe/Amsterdam")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


settings = Settings.from_env()
