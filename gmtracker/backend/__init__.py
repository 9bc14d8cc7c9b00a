"""Backend package for the GM tracker combat and rest engine."""

from .bestiary import BestiaryCatalog, HttpBestiaryCatalog, InMemoryBestiaryCatalog, create_catalog
from .config import BackendSettings, configure_logging, load_settings
from .controller import EncounterLifecycleController, Phase
from .errors import CatalogLookupError, RecordNotFoundError, StoreError, TrackerError
from .intents import dispatch_intent
from .repository import (
    ChangeFeed,
    EncounterRepository,
    InMemoryEncounterRepository,
    PostgresEncounterRepository,
    create_repository,
)
from .rest import apply_rest, build_long_rest_update, build_short_rest_update, restorable_resources
from .state import build_combat_state
from .sync import LocalUpdateMarkers, RealtimeHPSyncBridge

__all__ = [
    "apply_rest",
    "BackendSettings",
    "BestiaryCatalog",
    "build_combat_state",
    "build_long_rest_update",
    "build_short_rest_update",
    "CatalogLookupError",
    "ChangeFeed",
    "configure_logging",
    "create_catalog",
    "create_repository",
    "dispatch_intent",
    "EncounterLifecycleController",
    "EncounterRepository",
    "HttpBestiaryCatalog",
    "InMemoryBestiaryCatalog",
    "InMemoryEncounterRepository",
    "load_settings",
    "LocalUpdateMarkers",
    "Phase",
    "PostgresEncounterRepository",
    "RealtimeHPSyncBridge",
    "RecordNotFoundError",
    "restorable_resources",
    "StoreError",
    "TrackerError",
]
