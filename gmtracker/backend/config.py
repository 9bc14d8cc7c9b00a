"""Configuration helpers for backend runtime."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    database_url: str | None
    bestiary_url: str | None
    bestiary_key: str | None
    host: str
    port: int
    sync_window_seconds: float
    log_level: str


def load_settings() -> BackendSettings:
    port_raw = os.getenv("GMTRACKER_PORT", "8000")
    window_raw = os.getenv("GMTRACKER_SYNC_WINDOW_SECONDS", "2.0")
    return BackendSettings(
        database_url=os.getenv("GMTRACKER_DATABASE_URL"),
        bestiary_url=os.getenv("GMTRACKER_BESTIARY_URL"),
        bestiary_key=os.getenv("GMTRACKER_BESTIARY_KEY"),
        host=os.getenv("GMTRACKER_HOST", "127.0.0.1"),
        port=int(port_raw),
        sync_window_seconds=float(window_raw),
        log_level=os.getenv("GMTRACKER_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(settings: BackendSettings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
