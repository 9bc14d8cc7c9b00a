"""Two-way HP synchronisation between character records and player participants."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from gmtracker.backend.models import CampaignMember, CharacterChange, Participant

logger = logging.getLogger(__name__)

DEFAULT_SUPPRESSION_WINDOW = 2.0

HPUpdateCallback = Callable[[str, dict[str, int]], None]


@dataclass
class LocalUpdateMarkers:
    """Character ids written locally, each remembered for ``window`` seconds."""

    window: float = DEFAULT_SUPPRESSION_WINDOW
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self) -> None:
        self._expires_at: dict[str, float] = {}

    def mark(self, record_id: str) -> None:
        self._expires_at[record_id] = self.clock() + self.window

    def is_marked(self, record_id: str) -> bool:
        self._purge()
        return record_id in self._expires_at

    def clear(self) -> None:
        self._expires_at.clear()

    def _purge(self) -> None:
        now = self.clock()
        for record_id in [key for key, expires_at in self._expires_at.items() if expires_at <= now]:
            del self._expires_at[record_id]


@dataclass
class RealtimeHPSyncBridge:
    repository: Any
    markers: LocalUpdateMarkers = field(default_factory=LocalUpdateMarkers)

    def __post_init__(self) -> None:
        self._callback: HPUpdateCallback | None = None
        self._subscription: Any = None
        self._members: list[CampaignMember] = []
        self._participants: list[Participant] = []
        self._tracked_ids: frozenset[str] = frozenset()

    @property
    def tracked_character_ids(self) -> frozenset[str]:
        return self._tracked_ids

    def connect(self, callback: HPUpdateCallback) -> None:
        self._callback = callback

    def track(self, members: Iterable[CampaignMember], participants: Iterable[Participant]) -> None:
        """Subscribe to the characters behind the given player participants."""
        self._members = list(members)
        self._participants = list(participants)
        member_ids = {
            participant.player_member_id
            for participant in self._participants
            if participant.participant_type == "player" and participant.player_member_id
        }
        character_ids = frozenset(
            member.player_id for member in self._members if member.id in member_ids and member.player_id
        )
        if character_ids == self._tracked_ids and self._subscription is not None:
            return
        self._unsubscribe()
        self._tracked_ids = character_ids
        if character_ids:
            self._subscription = self.repository.subscribe_characters(character_ids, self._on_change)
            logger.debug("Tracking HP for characters %s", sorted(character_ids))

    def push_local_hp(self, participant: Participant) -> dict[str, Any] | None:
        """Write a player participant's HP back to its character record."""
        character_id = self._character_id_for(participant)
        if character_id is None:
            return None
        self.markers.mark(character_id)
        return self.repository.update_character(
            character_id,
            {"current_hp": participant.current_hp, "temporary_hp": participant.temporary_hp},
        )

    def close(self) -> None:
        self._unsubscribe()
        self._tracked_ids = frozenset()
        self.markers.clear()

    def _unsubscribe(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def _character_id_for(self, participant: Participant) -> str | None:
        if participant.participant_type != "player" or not participant.player_member_id:
            return None
        for member in self._members:
            if member.id == participant.player_member_id:
                return member.player_id
        return None

    def _on_change(self, change: CharacterChange) -> None:
        if self.markers.is_marked(change.record_id):
            logger.debug("Ignoring echo of local HP write for character %s", change.record_id)
            return
        member = next((m for m in self._members if m.player_id == change.record_id), None)
        if member is None:
            return
        participant = next(
            (
                p
                for p in self._participants
                if p.participant_type == "player" and p.player_member_id == member.id
            ),
            None,
        )
        if participant is None or self._callback is None:
            return
        updates = {
            "current_hp": int(change.fields.get("current_hp", participant.current_hp) or 0),
            "temporary_hp": int(change.fields.get("temporary_hp", participant.temporary_hp) or 0),
        }
        self._callback(participant.id, updates)
