"""Exception taxonomy shared by the repository, catalog and controller."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for backend failures surfaced to the caller."""


class StoreError(TrackerError):
    """A persistence call failed."""


class RecordNotFoundError(StoreError):
    def __init__(self, collection: str, record_id: str) -> None:
        super().__init__(f"{collection} record not found: {record_id}")
        self.collection = collection
        self.record_id = record_id


class CatalogLookupError(TrackerError):
    """The bestiary catalog could not return the requested entry."""
