"""Domain models for encounters, participants, rests and command results."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Literal


EncounterStatus = Literal["active", "completed"]
ParticipantType = Literal["player", "monster"]
RestType = Literal["short", "long"]
CommandStatus = Literal["applied", "skipped", "failed"]


def _pick(cls: type, row: dict[str, Any]) -> dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in row.items() if key in names}


@dataclass(frozen=True)
class Encounter:
    id: str
    campaign_id: str
    name: str
    status: EncounterStatus = "active"
    saved: bool = False
    round_number: int = 1
    current_turn_index: int = 0
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Encounter":
        return cls(**_pick(cls, row))

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Participant:
    id: str
    encounter_id: str
    participant_type: ParticipantType
    display_name: str
    sort_order: int = 0
    monster_id: str | None = None
    player_member_id: str | None = None
    initiative_roll: int = 0
    current_hp: int = 0
    max_hp: int = 0
    temporary_hp: int = 0
    armor_class: int = 10
    conditions: tuple[str, ...] = ()
    notes: str = ""
    is_active: bool = True
    created_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Participant":
        values = _pick(cls, row)
        values["conditions"] = tuple(values.get("conditions") or ())
        return cls(**values)

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["conditions"] = list(self.conditions)
        return row


@dataclass(frozen=True)
class PreparationEntry:
    """A combatant staged before the encounter exists."""

    id: str
    participant_type: ParticipantType
    name: str
    member_id: str | None = None
    monster_slug: str | None = None
    monster_id: str | None = None
    hp: int = 0
    max_hp: int = 0
    temporary_hp: int = 0
    ac: int = 10
    initiative_roll: int = 0


@dataclass(frozen=True)
class SourceRef:
    """What to add to a running encounter.

    For monsters ``ref`` is a campaign monster id or a catalog slug; for players
    it is a member id, or None for every eligible member.
    """

    participant_type: ParticipantType
    ref: str | None = None


@dataclass(frozen=True)
class CampaignMember:
    id: str
    campaign_id: str
    user_id: str | None = None
    player_id: str | None = None
    player_name: str | None = None
    email: str | None = None
    is_active: bool = True

    @property
    def display_name(self) -> str:
        return self.player_name or self.email or "Player"

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CampaignMember":
        return cls(**_pick(cls, row))


@dataclass(frozen=True)
class CharacterChange:
    """A change-feed notification for one character record."""

    record_id: str
    fields: dict[str, Any]


@dataclass(frozen=True)
class RestorableResource:
    id: str
    name: str
    kind: Literal["standard", "custom"]
    current: int
    max: int
    rest_type: Literal["short", "long", "both"]
    icon: str | None = None
    color: str | None = None


@dataclass(frozen=True)
class RestUpdate:
    update_data: dict[str, Any]
    restored_labels: list[str]
    healing: int = 0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a controller intent.

    ``applied`` means the change is committed to the store, ``skipped`` means the
    intent was not valid in the current state, ``failed`` means a collaborator
    raised after the in-memory state was already updated. Failed results carry a
    rollback hook restoring the pre-command snapshot.
    """

    status: CommandStatus
    patch: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    rollback_fn: Callable[[], None] | None = field(default=None, repr=False, compare=False)

    @property
    def ok(self) -> bool:
        return self.status == "applied"

    def rollback(self) -> bool:
        if self.rollback_fn is None:
            return False
        self.rollback_fn()
        return True

    @classmethod
    def applied(cls, patch: dict[str, Any] | None = None, message: str | None = None) -> "CommandResult":
        return cls(status="applied", patch=patch or {}, message=message)

    @classmethod
    def skipped(cls, message: str) -> "CommandResult":
        return cls(status="skipped", message=message)

    @classmethod
    def failed(cls, message: str, rollback_fn: Callable[[], None] | None = None) -> "CommandResult":
        return cls(status="failed", message=message, rollback_fn=rollback_fn)
