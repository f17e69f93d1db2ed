from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List

DEFAULT_DATABASE_URL = "sqlite:///./bridge_classroom.db"
DEFAULT_ORIGINS = "http://localhost:5173,http://localhost:4173"


def _env_flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() not in ("0", "false", "no", "off", "")


@dataclass(frozen=True)
class Settings:
    database_url: str
    api_key: str
    allowed_origins: str
    log_level: str
    backfill_on_startup: bool

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL).strip()
        or DEFAULT_DATABASE_URL,
        api_key=os.getenv("API_KEY", ""),
        allowed_origins=os.getenv("ALLOWED_ORIGINS", DEFAULT_ORIGINS),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        backfill_on_startup=_env_flag("BACKFILL_ON_STARTUP"),
    )


settings = load_settings()
