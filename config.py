"""
Runtime configuration

Values come from the environment (and a local .env file when present).
Build one Settings object at startup and pass it where it is needed.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None
    port: int = 8000
    log_level: str = "INFO"
    change_streams: bool = Field(False, description="Wait on MongoDB change streams instead of polling")
    poll_interval: float = Field(2.0, gt=0, description="Seconds between snapshot checks")

    @classmethod
    def from_env(cls) -> "Settings":
        # Load environment variables from .env file
        load_dotenv()
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            port=int(os.getenv("PORT", 8000)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            change_streams=_flag(os.getenv("CHANGE_STREAMS")),
            poll_interval=float(os.getenv("POLL_INTERVAL", 2.0)),
        )

    @property
    def database_configured(self) -> bool:
        return bool(self.database_url and self.database_name)
