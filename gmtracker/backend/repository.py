"""Persistence interfaces and implementations for encounter and character data."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Iterator, Protocol

from gmtracker.backend.errors import RecordNotFoundError, StoreError
from gmtracker.backend.models import CampaignMember, CharacterChange, Encounter, Participant

logger = logging.getLogger(__name__)

CHANGE_CHANNEL = "character_changes"

ENCOUNTER_COLUMNS = frozenset(item.name for item in fields(Encounter)) - {"id"}
PARTICIPANT_COLUMNS = frozenset(item.name for item in fields(Participant)) - {"id"}

ChangeCallback = Callable[[CharacterChange], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription(Protocol):
    def unsubscribe(self) -> None:
        """Stop delivering change events to the subscribed callback."""


class EncounterRepository(Protocol):
    def create_encounter(self, campaign_id: str, name: str, status: str = "active", saved: bool = False) -> Encounter:
        """Create an encounter row with round 1 and turn index 0."""

    def get_encounter(self, encounter_id: str) -> Encounter:
        """Return the encounter or raise RecordNotFoundError."""

    def get_active_encounter(self, campaign_id: str) -> Encounter | None:
        """Return the most recent active encounter of the campaign."""

    def list_saved_encounters(self, campaign_id: str) -> list[Encounter]:
        """Return saved encounters, newest first."""

    def update_encounter(self, encounter_id: str, changes: dict[str, Any]) -> Encounter:
        """Apply all ``changes`` in one update and return the stored row."""

    def delete_encounter(self, encounter_id: str) -> None:
        """Purge the encounter and its participants."""

    def list_participants(self, encounter_id: str) -> list[Participant]:
        """Return participants ordered by sort_order."""

    def add_participants(self, rows: list[dict[str, Any]]) -> list[Participant]:
        """Bulk insert participant rows."""

    def update_participant(self, participant_id: str, changes: dict[str, Any]) -> Participant:
        """Apply ``changes`` to one participant."""

    def remove_participant(self, participant_id: str) -> None:
        """Delete one participant."""

    def reorder_participants(self, encounter_id: str, participant_ids: list[str]) -> None:
        """Persist sort_order = position for every id."""

    def save_monster(self, campaign_id: str, monster: dict[str, Any]) -> dict[str, Any]:
        """Store a stat block in the campaign bestiary and return it with its id."""

    def list_campaign_monsters(self, campaign_id: str) -> list[dict[str, Any]]:
        """Return the campaign bestiary ordered by name."""

    def update_campaign_monster(self, monster_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` into a stored stat block or raise RecordNotFoundError."""

    def delete_campaign_monster(self, monster_id: str) -> None:
        """Remove a stat block from the campaign bestiary."""

    def list_members(self, campaign_id: str) -> list[CampaignMember]:
        """Return the campaign's members."""

    def get_character(self, character_id: str) -> dict[str, Any]:
        """Return a character record or raise RecordNotFoundError."""

    def update_character(self, character_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Patch a character record and publish the change."""

    def subscribe_characters(self, character_ids: Iterable[str], callback: ChangeCallback) -> Subscription:
        """Deliver change events for ``character_ids`` to ``callback``."""


@dataclass
class ChangeFeed:
    """Fan-out of character change events to id-filtered subscribers."""

    def __post_init__(self) -> None:
        self._subscribers: dict[int, tuple[frozenset[str], ChangeCallback]] = {}
        self._next_key = 0

    def subscribe(self, character_ids: Iterable[str], callback: ChangeCallback) -> "FeedSubscription":
        key = self._next_key
        self._next_key += 1
        self._subscribers[key] = (frozenset(character_ids), callback)
        return FeedSubscription(feed=self, key=key)

    def unsubscribe(self, key: int) -> None:
        self._subscribers.pop(key, None)

    def publish(self, change: CharacterChange) -> None:
        for character_ids, callback in list(self._subscribers.values()):
            if change.record_id in character_ids:
                callback(change)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


@dataclass
class FeedSubscription:
    feed: ChangeFeed
    key: int

    def unsubscribe(self) -> None:
        self.feed.unsubscribe(self.key)


@dataclass
class InMemoryEncounterRepository:
    feed: ChangeFeed = field(default_factory=ChangeFeed)

    def __post_init__(self) -> None:
        self._encounters: dict[str, Encounter] = {}
        self._participants: dict[str, Participant] = {}
        self._monsters: dict[str, dict[str, Any]] = {}
        self._members: dict[str, CampaignMember] = {}
        self._characters: dict[str, dict[str, Any]] = {}

    def add_member(self, member: CampaignMember) -> CampaignMember:
        self._members[member.id] = member
        return member

    def put_character(self, character: dict[str, Any]) -> dict[str, Any]:
        self._characters[character["id"]] = copy.deepcopy(character)
        return self.get_character(character["id"])

    def create_encounter(self, campaign_id: str, name: str, status: str = "active", saved: bool = False) -> Encounter:
        now = _utc_now_iso()
        encounter = Encounter(
            id=str(uuid.uuid4()),
            campaign_id=campaign_id,
            name=name,
            status=status,
            saved=saved,
            created_at=now,
            updated_at=now,
        )
        self._encounters[encounter.id] = encounter
        return encounter

    def get_encounter(self, encounter_id: str) -> Encounter:
        encounter = self._encounters.get(encounter_id)
        if encounter is None:
            raise RecordNotFoundError("encounter", encounter_id)
        return encounter

    def get_active_encounter(self, campaign_id: str) -> Encounter | None:
        active = [
            encounter
            for encounter in self._encounters.values()
            if encounter.campaign_id == campaign_id and encounter.status == "active"
        ]
        if not active:
            return None
        return max(active, key=lambda encounter: encounter.created_at or "")

    def list_saved_encounters(self, campaign_id: str) -> list[Encounter]:
        saved = [
            encounter
            for encounter in self._encounters.values()
            if encounter.campaign_id == campaign_id and encounter.saved
        ]
        return sorted(saved, key=lambda encounter: encounter.created_at or "", reverse=True)

    def update_encounter(self, encounter_id: str, changes: dict[str, Any]) -> Encounter:
        current = self.get_encounter(encounter_id)
        values = current.to_row()
        values.update({key: value for key, value in changes.items() if key in ENCOUNTER_COLUMNS})
        values["updated_at"] = _utc_now_iso()
        updated = Encounter.from_row(values)
        self._encounters[encounter_id] = updated
        return updated

    def delete_encounter(self, encounter_id: str) -> None:
        self.get_encounter(encounter_id)
        del self._encounters[encounter_id]
        for participant_id in [p.id for p in self._participants.values() if p.encounter_id == encounter_id]:
            del self._participants[participant_id]

    def list_participants(self, encounter_id: str) -> list[Participant]:
        rows = [p for p in self._participants.values() if p.encounter_id == encounter_id]
        return sorted(rows, key=lambda participant: participant.sort_order)

    def add_participants(self, rows: list[dict[str, Any]]) -> list[Participant]:
        now = _utc_now_iso()
        added: list[Participant] = []
        for row in rows:
            participant = Participant.from_row({**row, "id": str(uuid.uuid4()), "created_at": now})
            self._participants[participant.id] = participant
            added.append(participant)
        return added

    def update_participant(self, participant_id: str, changes: dict[str, Any]) -> Participant:
        current = self._participants.get(participant_id)
        if current is None:
            raise RecordNotFoundError("participant", participant_id)
        values = current.to_row()
        values.update({key: value for key, value in changes.items() if key in PARTICIPANT_COLUMNS})
        updated = Participant.from_row(values)
        self._participants[participant_id] = updated
        return updated

    def remove_participant(self, participant_id: str) -> None:
        if self._participants.pop(participant_id, None) is None:
            raise RecordNotFoundError("participant", participant_id)

    def reorder_participants(self, encounter_id: str, participant_ids: list[str]) -> None:
        for position, participant_id in enumerate(participant_ids):
            self.update_participant(participant_id, {"sort_order": position})

    def save_monster(self, campaign_id: str, monster: dict[str, Any]) -> dict[str, Any]:
        saved = {**copy.deepcopy(monster), "id": str(uuid.uuid4()), "campaign_id": campaign_id}
        self._monsters[saved["id"]] = saved
        return copy.deepcopy(saved)

    def list_campaign_monsters(self, campaign_id: str) -> list[dict[str, Any]]:
        monsters = [copy.deepcopy(m) for m in self._monsters.values() if m["campaign_id"] == campaign_id]
        return sorted(monsters, key=lambda monster: monster.get("name", ""))

    def update_campaign_monster(self, monster_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        monster = self._monsters.get(monster_id)
        if monster is None:
            raise RecordNotFoundError("campaign monster", monster_id)
        monster.update({key: copy.deepcopy(value) for key, value in changes.items() if key not in ("id", "campaign_id")})
        return copy.deepcopy(monster)

    def delete_campaign_monster(self, monster_id: str) -> None:
        if self._monsters.pop(monster_id, None) is None:
            raise RecordNotFoundError("campaign monster", monster_id)

    def list_members(self, campaign_id: str) -> list[CampaignMember]:
        return [member for member in self._members.values() if member.campaign_id == campaign_id]

    def get_character(self, character_id: str) -> dict[str, Any]:
        character = self._characters.get(character_id)
        if character is None:
            raise RecordNotFoundError("character", character_id)
        return copy.deepcopy(character)

    def update_character(self, character_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        character = self._characters.get(character_id)
        if character is None:
            raise RecordNotFoundError("character", character_id)
        character.update(copy.deepcopy(changes))
        self.feed.publish(CharacterChange(record_id=character_id, fields=copy.deepcopy(character)))
        return copy.deepcopy(character)

    def subscribe_characters(self, character_ids: Iterable[str], callback: ChangeCallback) -> Subscription:
        return self.feed.subscribe(character_ids, callback)


@dataclass
class PostgresEncounterRepository:
    database_url: str
    feed: ChangeFeed = field(default_factory=ChangeFeed)

    def __post_init__(self) -> None:
        self._listener: Any = None

    def _connect(self) -> Any:
        import psycopg
        from psycopg.rows import dict_row

        return psycopg.connect(self.database_url, row_factory=dict_row)

    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        import psycopg

        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
        except psycopg.Error as exc:
            raise StoreError(str(exc)) from exc

    def _update_row(self, table: str, allowed: frozenset[str], record_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        columns = [key for key in changes if key in allowed]
        if not columns:
            raise StoreError(f"No updatable columns for {table}")
        assignments = ", ".join(f"{column} = %s" for column in columns)
        params = [_to_db_value(column, changes[column]) for column in columns]
        with self._cursor() as cur:
            cur.execute(
                f"UPDATE {table} SET {assignments} WHERE id = %s RETURNING *",
                (*params, record_id),
            )
            row = cur.fetchone()
        if row is None:
            raise RecordNotFoundError(table, record_id)
        return row

    def create_encounter(self, campaign_id: str, name: str, status: str = "active", saved: bool = False) -> Encounter:
        now = datetime.now(timezone.utc)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO campaign_encounters
                    (id, campaign_id, name, status, saved, round_number, current_turn_index, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, 1, 0, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), campaign_id, name, status, saved, now, now),
            )
            row = cur.fetchone()
        return _encounter_from_row(row)

    def get_encounter(self, encounter_id: str) -> Encounter:
        with self._cursor() as cur:
            cur.execute("SELECT * FROM campaign_encounters WHERE id = %s", (encounter_id,))
            row = cur.fetchone()
        if row is None:
            raise RecordNotFoundError("encounter", encounter_id)
        return _encounter_from_row(row)

    def get_active_encounter(self, campaign_id: str) -> Encounter | None:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM campaign_encounters
                WHERE campaign_id = %s AND status = 'active'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (campaign_id,),
            )
            row = cur.fetchone()
        return None if row is None else _encounter_from_row(row)

    def list_saved_encounters(self, campaign_id: str) -> list[Encounter]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT * FROM campaign_encounters
                WHERE campaign_id = %s AND saved = TRUE
                ORDER BY created_at DESC
                """,
                (campaign_id,),
            )
            rows = cur.fetchall()
        return [_encounter_from_row(row) for row in rows]

    def update_encounter(self, encounter_id: str, changes: dict[str, Any]) -> Encounter:
        stamped = {**changes, "updated_at": datetime.now(timezone.utc)}
        return _encounter_from_row(self._update_row("campaign_encounters", ENCOUNTER_COLUMNS, encounter_id, stamped))

    def delete_encounter(self, encounter_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM encounter_participants WHERE encounter_id = %s", (encounter_id,))
            cur.execute("DELETE FROM campaign_encounters WHERE id = %s", (encounter_id,))

    def list_participants(self, encounter_id: str) -> list[Participant]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM encounter_participants WHERE encounter_id = %s ORDER BY sort_order ASC",
                (encounter_id,),
            )
            rows = cur.fetchall()
        return [_participant_from_row(row) for row in rows]

    def add_participants(self, rows: list[dict[str, Any]]) -> list[Participant]:
        if not rows:
            return []
        now = datetime.now(timezone.utc)
        columns = sorted(PARTICIPANT_COLUMNS - {"created_at"})
        placeholders = ", ".join(["%s"] * (len(columns) + 2))
        added: list[Participant] = []
        with self._cursor() as cur:
            for row in rows:
                params = [_to_db_value(column, row.get(column, _PARTICIPANT_DEFAULTS.get(column))) for column in columns]
                cur.execute(
                    f"""
                    INSERT INTO encounter_participants (id, {", ".join(columns)}, created_at)
                    VALUES ({placeholders})
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), *params, now),
                )
                added.append(_participant_from_row(cur.fetchone()))
        return added

    def update_participant(self, participant_id: str, changes: dict[str, Any]) -> Participant:
        return _participant_from_row(
            self._update_row("encounter_participants", PARTICIPANT_COLUMNS, participant_id, changes)
        )

    def remove_participant(self, participant_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM encounter_participants WHERE id = %s", (participant_id,))

    def reorder_participants(self, encounter_id: str, participant_ids: list[str]) -> None:
        with self._cursor() as cur:
            for position, participant_id in enumerate(participant_ids):
                cur.execute(
                    "UPDATE encounter_participants SET sort_order = %s WHERE id = %s AND encounter_id = %s",
                    (position, participant_id, encounter_id),
                )

    def save_monster(self, campaign_id: str, monster: dict[str, Any]) -> dict[str, Any]:
        monster_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO campaign_monsters (id, campaign_id, slug, name, source, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                """,
                (
                    monster_id,
                    campaign_id,
                    monster.get("slug", ""),
                    monster.get("name", ""),
                    monster.get("source", "custom"),
                    json.dumps(monster),
                    now,
                    now,
                ),
            )
        return {**monster, "id": monster_id, "campaign_id": campaign_id}

    def list_campaign_monsters(self, campaign_id: str) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT id, campaign_id, data FROM campaign_monsters WHERE campaign_id = %s ORDER BY name ASC",
                (campaign_id,),
            )
            rows = cur.fetchall()
        return [{**_json_value(row["data"]), "id": row["id"], "campaign_id": row["campaign_id"]} for row in rows]

    def update_campaign_monster(self, monster_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        data = {key: value for key, value in changes.items() if key not in ("id", "campaign_id")}
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE campaign_monsters
                SET data = data || %s::jsonb,
                    slug = COALESCE(%s, slug),
                    name = COALESCE(%s, name),
                    updated_at = %s
                WHERE id = %s
                RETURNING id, campaign_id, data
                """,
                (json.dumps(data), data.get("slug"), data.get("name"), datetime.now(timezone.utc), monster_id),
            )
            row = cur.fetchone()
        if row is None:
            raise RecordNotFoundError("campaign monster", monster_id)
        return {**_json_value(row["data"]), "id": row["id"], "campaign_id": row["campaign_id"]}

    def delete_campaign_monster(self, monster_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM campaign_monsters WHERE id = %s RETURNING id", (monster_id,))
            row = cur.fetchone()
        if row is None:
            raise RecordNotFoundError("campaign monster", monster_id)

    def list_members(self, campaign_id: str) -> list[CampaignMember]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT * FROM campaign_members WHERE campaign_id = %s ORDER BY joined_at ASC",
                (campaign_id,),
            )
            rows = cur.fetchall()
        return [CampaignMember.from_row(row) for row in rows]

    def get_character(self, character_id: str) -> dict[str, Any]:
        with self._cursor() as cur:
            cur.execute("SELECT id, data FROM players WHERE id = %s", (character_id,))
            row = cur.fetchone()
        if row is None:
            raise RecordNotFoundError("character", character_id)
        return {**_json_value(row["data"]), "id": row["id"]}

    def update_character(self, character_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        # The players trigger emits the NOTIFY consumed by poll_changes.
        with self._cursor() as cur:
            cur.execute(
                """
                UPDATE players SET data = data || %s::jsonb, updated_at = %s
                WHERE id = %s
                RETURNING id, data
                """,
                (json.dumps(changes), datetime.now(timezone.utc), character_id),
            )
            row = cur.fetchone()
        if row is None:
            raise RecordNotFoundError("character", character_id)
        return {**_json_value(row["data"]), "id": row["id"]}

    def subscribe_characters(self, character_ids: Iterable[str], callback: ChangeCallback) -> Subscription:
        return self.feed.subscribe(character_ids, callback)

    def listen(self) -> None:
        import psycopg

        if self._listener is not None:
            return
        try:
            self._listener = psycopg.connect(self.database_url, autocommit=True)
            self._listener.execute(f"LISTEN {CHANGE_CHANNEL}")
        except psycopg.Error as exc:
            self._listener = None
            raise StoreError(str(exc)) from exc
        logger.info("Listening for character changes on %s", CHANGE_CHANNEL)

    def poll_changes(self, timeout: float = 1.0) -> int:
        """Drain pending NOTIFY payloads into the feed; returns events delivered."""
        import psycopg

        self.listen()
        delivered = 0
        try:
            notifies = list(self._listener.notifies(timeout=timeout, stop_after=100))
        except psycopg.Error as exc:
            self.close()
            raise StoreError(str(exc)) from exc
        for notify in notifies:
            change = parse_change_payload(notify.payload)
            if change is None:
                continue
            self.feed.publish(change)
            delivered += 1
        return delivered

    def close(self) -> None:
        if self._listener is not None:
            self._listener.close()
            self._listener = None


_PARTICIPANT_DEFAULTS: dict[str, Any] = {
    "sort_order": 0,
    "initiative_roll": 0,
    "current_hp": 0,
    "max_hp": 0,
    "temporary_hp": 0,
    "armor_class": 10,
    "conditions": [],
    "notes": "",
    "is_active": True,
}


def _to_db_value(column: str, value: Any) -> Any:
    if column == "conditions":
        return json.dumps(list(value or []))
    return value


def _json_value(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else json.loads(value)


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


def _encounter_from_row(row: dict[str, Any]) -> Encounter:
    return Encounter.from_row({key: _iso(value) for key, value in row.items()})


def _participant_from_row(row: dict[str, Any]) -> Participant:
    values = {key: _iso(value) for key, value in row.items()}
    conditions = values.get("conditions")
    if isinstance(conditions, str):
        values["conditions"] = json.loads(conditions)
    return Participant.from_row(values)


def parse_change_payload(payload: str) -> CharacterChange | None:
    try:
        data = json.loads(payload)
    except ValueError:
        logger.warning("Ignoring malformed change payload: %r", payload)
        return None
    if not isinstance(data, dict) or not data.get("id"):
        return None
    return CharacterChange(record_id=str(data["id"]), fields=data)


def create_repository(database_url: str | None) -> EncounterRepository:
    if database_url:
        return PostgresEncounterRepository(database_url=database_url)
    return InMemoryEncounterRepository()
