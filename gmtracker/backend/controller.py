"""Lifecycle controller for a campaign's combat encounters.

The controller owns the in-memory aggregate (encounter, ordered participants,
preparation roster) for one campaign and sequences repository calls for every
game-master intent. Mutations are applied optimistically; a failing repository
or catalog call yields a ``failed`` CommandResult whose ``rollback()`` restores
the state captured before the command ran, or re-reads the stored encounter
when some of the command's writes had already been committed.
"""

from __future__ import annotations

import itertools
import logging
import random
from dataclasses import replace
from enum import Enum
from typing import Any, Callable

from gmtracker.backend.bestiary import parse_monster_json, slugify, unique_monster_name
from gmtracker.backend.errors import RecordNotFoundError, TrackerError
from gmtracker.backend.initiative import next_turn_position, roll_initiative, sort_by_initiative
from gmtracker.backend.models import (
    CampaignMember,
    CommandResult,
    Encounter,
    Participant,
    PreparationEntry,
    SourceRef,
)

logger = logging.getLogger(__name__)

DEFAULT_ENCOUNTER_NAME = "Combat"

EDITABLE_PARTICIPANT_FIELDS = frozenset(
    {
        "display_name",
        "initiative_roll",
        "current_hp",
        "max_hp",
        "temporary_hp",
        "armor_class",
        "notes",
        "is_active",
    }
)
INTEGER_PARTICIPANT_FIELDS = frozenset({"initiative_roll", "current_hp", "max_hp", "temporary_hp", "armor_class"})
HP_FIELDS = frozenset({"current_hp", "temporary_hp"})


class Phase(str, Enum):
    PREPARING = "preparing"
    ACTIVE = "active"
    COMPLETED = "completed"


class EncounterLifecycleController:
    def __init__(
        self,
        campaign_id: str,
        repository: Any,
        catalog: Any,
        hp_sync: Any = None,
        rng: Any = random,
    ) -> None:
        self.campaign_id = campaign_id
        self.repository = repository
        self.catalog = catalog
        self.hp_sync = hp_sync
        self.rng = rng
        self.members: list[CampaignMember] = []
        self.encounter: Encounter | None = None
        self.participants: list[Participant] = []
        self.preparation: list[PreparationEntry] = []
        self.saved_monsters: list[dict[str, Any]] = []
        self._prep_ids = itertools.count(1)
        if hp_sync is not None:
            hp_sync.connect(self.apply_synced_hp)

    @property
    def phase(self) -> Phase:
        if self.encounter is None:
            return Phase.PREPARING
        if self.encounter.status == "active":
            return Phase.ACTIVE
        return Phase.COMPLETED

    @property
    def current_participant(self) -> Participant | None:
        if self.phase is not Phase.ACTIVE:
            return None
        if not 0 <= self.encounter.current_turn_index < len(self.participants):
            return None
        return self.participants[self.encounter.current_turn_index]

    # -- loading -----------------------------------------------------------

    def load(self) -> CommandResult:
        """Rehydrate members, campaign monsters and any running encounter."""
        try:
            self.members = self.repository.list_members(self.campaign_id)
            self.saved_monsters = self.repository.list_campaign_monsters(self.campaign_id)
            encounter = self.repository.get_active_encounter(self.campaign_id)
            participants = self.repository.list_participants(encounter.id) if encounter else []
            preparation = self.preparation or (self._member_entries() if encounter is None else [])
        except TrackerError as exc:
            return self._failure("load combat", exc)
        if encounter is not None:
            encounter = self._repair_turn_index(encounter, len(participants))
        self.encounter = encounter
        self.participants = participants
        self.preparation = preparation
        self._track()
        return CommandResult.applied({"phase": self.phase.value})

    def list_saved_encounters(self) -> list[Encounter]:
        return self.repository.list_saved_encounters(self.campaign_id)

    # -- campaign bestiary -------------------------------------------------

    def update_campaign_monster(self, monster_id: str, changes: dict[str, Any]) -> CommandResult:
        changes = {key: value for key, value in changes.items() if key not in ("id", "campaign_id")}
        if not changes:
            return self._skip("No monster fields to update")
        if self._saved_monster(monster_id) is None:
            return self._skip(f"Unknown campaign monster {monster_id}")
        try:
            stored = self.repository.update_campaign_monster(monster_id, changes)
        except TrackerError as exc:
            return self._failure(f"update monster {monster_id}", exc)
        self.saved_monsters = _by_name(
            [stored if monster.get("id") == monster_id else monster for monster in self.saved_monsters]
        )
        return CommandResult.applied({"monster_id": monster_id, **changes})

    def delete_campaign_monster(self, monster_id: str) -> CommandResult:
        """Drop a stat block; participants already created from it keep their own stats."""
        if self._saved_monster(monster_id) is None:
            return self._skip(f"Unknown campaign monster {monster_id}")
        try:
            self.repository.delete_campaign_monster(monster_id)
        except TrackerError as exc:
            return self._failure(f"delete monster {monster_id}", exc)
        self.saved_monsters = [monster for monster in self.saved_monsters if monster.get("id") != monster_id]
        return CommandResult.applied({"deleted": monster_id})

    def import_monsters(self, payloads: list[Any]) -> CommandResult:
        """Save exported monster JSON documents into the campaign bestiary.

        Every document is parsed and saved on its own; names already taken get a
        `` (2)``, `` (3)`` suffix. Invalid documents and store errors are reported
        per document in the patch and do not stop the rest of the import.
        """
        if not payloads:
            return self._skip("No monsters to import")
        taken = {str(monster.get("name", "")) for monster in self.saved_monsters}
        imported: list[dict[str, Any]] = []
        errors: list[str] = []
        for payload in payloads:
            label = payload.get("name") if isinstance(payload, dict) and payload.get("name") else "Unknown"
            try:
                monster = parse_monster_json(payload)
                name = unique_monster_name(monster["name"], taken)
                monster = {**monster, "name": name, "slug": slugify(name)}
                saved = self.repository.save_monster(self.campaign_id, monster)
            except (ValueError, TrackerError) as exc:
                logger.warning("Skipping imported monster %s: %s", label, exc)
                errors.append(f"{label}: {exc}")
                continue
            taken.add(name)
            imported.append(saved)
        self.saved_monsters = _by_name([*self.saved_monsters, *imported])
        logger.info("Imported %d monsters into campaign %s (%d errors)", len(imported), self.campaign_id, len(errors))
        if not imported:
            return CommandResult.skipped("; ".join(errors))
        return CommandResult.applied({"imported": [monster["id"] for monster in imported], "errors": errors})

    # -- preparation -------------------------------------------------------

    def add_to_preparation(self, entry: PreparationEntry) -> CommandResult:
        if self.phase is not Phase.PREPARING:
            return self._skip("Participants can only be staged before launch")
        self.preparation = [*self.preparation, entry]
        return CommandResult.applied({"entry_id": entry.id})

    def remove_from_preparation(self, entry_id: str) -> CommandResult:
        if self.phase is not Phase.PREPARING:
            return self._skip("Participants can only be unstaged before launch")
        remaining = [entry for entry in self.preparation if entry.id != entry_id]
        if len(remaining) == len(self.preparation):
            return self._skip(f"Unknown preparation entry {entry_id}")
        self.preparation = remaining
        return CommandResult.applied({"entry_id": entry_id})

    def set_preparation_initiative(self, entry_id: str, value: int) -> CommandResult:
        if self.phase is not Phase.PREPARING:
            return self._skip("Preparation is closed")
        if not any(entry.id == entry_id for entry in self.preparation):
            return self._skip(f"Unknown preparation entry {entry_id}")
        self.preparation = [
            replace(entry, initiative_roll=int(value)) if entry.id == entry_id else entry
            for entry in self.preparation
        ]
        return CommandResult.applied({"entry_id": entry_id, "initiative_roll": int(value)})

    def add_monster_to_preparation(self, slug: str, count: int = 1) -> CommandResult:
        """Stage ``count`` copies of a catalog monster, numbered when several."""
        if self.phase is not Phase.PREPARING:
            return self._skip("Preparation is closed")
        if count < 1:
            return self._skip("Count must be at least 1")
        try:
            monster = self._resolve_monster(slug)
        except TrackerError as exc:
            return self._failure(f"load monster {slug}", exc)

        entries = [
            PreparationEntry(
                id=f"prep-monster-{next(self._prep_ids)}",
                participant_type="monster",
                name=_numbered(monster["name"], index, count),
                monster_slug=monster.get("slug"),
                monster_id=monster.get("id"),
                hp=int(monster.get("hit_points") or 0),
                max_hp=int(monster.get("hit_points") or 0),
                ac=int(monster.get("armor_class") or 10),
            )
            for index in range(count)
        ]
        self.preparation = [*self.preparation, *entries]
        return CommandResult.applied({"entry_ids": [entry.id for entry in entries]})

    def roll_all_monster_initiative(self) -> CommandResult:
        if self.phase is Phase.PREPARING:
            self.preparation = roll_initiative(self.preparation, self.rng)
            return CommandResult.applied({"rolled": [e.id for e in self.preparation if e.participant_type == "monster"]})
        if self.phase is not Phase.ACTIVE:
            return self._skip("Initiative can only be rolled during preparation or combat")

        rollback = self._snapshot()
        rolled = roll_initiative(self.participants, self.rng)
        changed = [
            participant
            for participant, before in zip(rolled, self.participants)
            if participant.initiative_roll != before.initiative_roll
        ]
        self.participants = rolled
        try:
            for participant in changed:
                self.repository.update_participant(participant.id, {"initiative_roll": participant.initiative_roll})
                rollback = self._resync()
        except TrackerError as exc:
            return self._failure("roll initiative", exc, rollback)
        return CommandResult.applied({"rolled": [participant.id for participant in changed]})

    # -- launch / save -----------------------------------------------------

    def launch(self, name: str = "") -> CommandResult:
        return self._materialize(name, status="active", saved=False)

    def save_for_later(self, name: str = "") -> CommandResult:
        return self._materialize(name, status="completed", saved=True)

    def _materialize(self, name: str, status: str, saved: bool) -> CommandResult:
        if self.phase is not Phase.PREPARING:
            return self._skip("An encounter is already open")
        if not self.preparation:
            return self._skip("Add participants before launching combat")

        ordered = sort_by_initiative(self.preparation)
        try:
            encounter = self.repository.create_encounter(
                self.campaign_id,
                name.strip() or DEFAULT_ENCOUNTER_NAME,
                status=status,
                saved=saved,
            )
            rows = [self._row_from_entry(encounter.id, entry, position) for position, entry in enumerate(ordered)]
            participants = self.repository.add_participants(rows)
        except TrackerError as exc:
            return self._failure("create encounter", exc)

        self.encounter = encounter
        self.participants = participants
        self.preparation = []
        self._track()
        logger.info("Encounter %s %s with %d participants", encounter.id, status, len(participants))
        return CommandResult.applied({"encounter_id": encounter.id, "status": status, "saved": saved})

    # -- turn loop ---------------------------------------------------------

    def next_turn(self) -> CommandResult:
        if self.phase is not Phase.ACTIVE:
            return self._skip("No active encounter")
        if not self.participants:
            return self._skip("No participants in the encounter")

        turn_index, round_number = next_turn_position(
            self.encounter.current_turn_index,
            self.encounter.round_number,
            len(self.participants),
        )
        patch = {"current_turn_index": turn_index, "round_number": round_number}
        return self._commit_encounter(patch, "advance turn")

    def sort_by_initiative_now(self) -> CommandResult:
        """Reorder the live roster by initiative and restart at its top."""
        if self.phase is not Phase.ACTIVE:
            return self._skip("No active encounter")

        rollback = self._snapshot()
        ordered = [
            replace(participant, sort_order=position)
            for position, participant in enumerate(sort_by_initiative(self.participants))
        ]
        self.participants = ordered
        self.encounter = replace(self.encounter, current_turn_index=0)
        try:
            self.repository.reorder_participants(self.encounter.id, [p.id for p in ordered])
            rollback = self._resync()
            self.encounter =self.repository.update_encounter(self.encounter.id, {"current_turn_index": 0})
        except TrackerError as exc:
            return self._failure("sort by initiative", exc, rollback)
        return CommandResult.applied({"order": [p.id for p in ordered], "current_turn_index": 0})

    # -- roster changes ----------------------------------------------------

    def add_participant(self, source: SourceRef, count: int = 1) -> CommandResult:
        if self.phase is not Phase.ACTIVE:
            return self._skip("No active encounter")
        if source.participant_type == "monster":
            return self._add_monsters(source.ref, count)
        return self._add_players(source.ref)

    def _add_monsters(self, ref: str | None, count: int) -> CommandResult:
        if not ref:
            return self._skip("A monster reference is required")
        if count < 1:
            return self._skip("Count must be at least 1")
        try:
            monster = self._resolve_monster(ref)
        except TrackerError as exc:
            return self._failure(f"load monster {ref}", exc)

        hit_points = int(monster.get("hit_points") or 0)
        rows = [
            {
                "encounter_id": self.encounter.id,
                "participant_type": "monster",
                "monster_id": monster.get("id"),
                "display_name": _numbered(monster["name"], index, count),
                "initiative_roll": 0,
                "current_hp": hit_points,
                "max_hp": hit_points,
                "armor_class": int(monster.get("armor_class") or 10),
                "sort_order": len(self.participants) + index,
            }
            for index in range(count)
        ]
        return self._append_rows(rows, f"add {monster['name']}")

    def _add_players(self, member_id: str | None) -> CommandResult:
        present = {p.player_member_id for p in self.participants if p.participant_type == "player"}
        candidates = [
            member
            for member in self.members
            if member.is_active and member.id not in present and (member_id is None or member.id == member_id)
        ]
        if not candidates:
            return self._skip("All players are already in the encounter")
        try:
            entries = [self._member_entry(member) for member in candidates]
        except TrackerError as exc:
            return self._failure("read character records", exc)
        rows = [
            self._row_from_entry(self.encounter.id, entry, len(self.participants) + index)
            for index, entry in enumerate(entries)
        ]
        return self._append_rows(rows, "add players")

    def _append_rows(self, rows: list[dict[str, Any]], action: str) -> CommandResult:
        # One insert per row: a failure part-way keeps the rows already written.
        added: list[Participant] = []
        try:
            for row in rows:
                created = self.repository.add_participants([row])
                added.extend(created)
                self.participants = [*self.participants, *created]
        except TrackerError as exc:
            self._track()
            return self._failure(f"{action} ({len(added)} of {len(rows)} added)", exc)
        self._track()
        return CommandResult.applied({"added": [participant.id for participant in added]})

    def remove_participant(self, participant_id: str) -> CommandResult:
        """Delete a participant and rebase the turn pointer onto the same combatant."""
        if self.phase is Phase.PREPARING:
            return self._skip("No encounter open")
        position = self._position_of(participant_id)
        if position is None:
            return self._skip(f"Unknown participant {participant_id}")

        rollback = self._snapshot()
        remaining = [p for p in self.participants if p.id != participant_id]
        turn_index = self.encounter.current_turn_index
        if position < turn_index:
            turn_index -= 1
        if turn_index >= len(remaining):
            turn_index = 0
        index_changed = turn_index != self.encounter.current_turn_index

        self.participants = remaining
        self.encounter = replace(self.encounter, current_turn_index=turn_index)
        try:
            self.repository.remove_participant(participant_id)
            rollback = self._resync()
            if index_changed:
                self.encounter = self.repository.update_encounter(self.encounter.id, {"current_turn_index": turn_index})
        except TrackerError as exc:
            return self._failure("remove participant", exc, rollback)
        self._track()
        return CommandResult.applied({"removed": participant_id, "current_turn_index": turn_index})

    # -- ending / reloading ------------------------------------------------

    def end_combat(self) -> CommandResult:
        if self.phase is not Phase.ACTIVE:
            return self._skip("No active encounter")
        encounter_id = self.encounter.id
        try:
            self.repository.update_encounter(encounter_id, {"status": "completed", "saved": False})
            preparation = self._member_entries()
        except TrackerError as exc:
            return self._failure("end combat", exc)
        self.encounter = None
        self.participants = []
        self.preparation = preparation
        self._track()
        logger.info("Encounter %s completed", encounter_id)
        return CommandResult.applied({"encounter_id": encounter_id, "status": "completed"})

    def reset_preparation(self) -> CommandResult:
        """Close a completed encounter view and start preparing a new one."""
        if self.phase is not Phase.COMPLETED:
            return self._skip("Only a completed encounter can be closed")
        try:
            preparation = self._member_entries()
        except TrackerError as exc:
            return self._failure("read character records", exc)
        self.encounter = None
        self.participants = []
        self.preparation = preparation
        self._track()
        return CommandResult.applied({"phase": self.phase.value})

    def load_saved_encounter(self, encounter_id: str) -> CommandResult:
        if self.phase is Phase.ACTIVE:
            return self._skip("End the current combat before loading another")
        try:
            encounter = self.repository.get_encounter(encounter_id)
            if encounter.status != "completed":
                return self._skip(f"Encounter {encounter_id} is not completed")
            participants = self.repository.list_participants(encounter_id)
        except TrackerError as exc:
            return self._failure(f"load encounter {encounter_id}", exc)

        slugs = {monster.get("id"): monster.get("slug") for monster in self.saved_monsters}
        self.preparation = [
            PreparationEntry(
                id=f"prep-{participant.participant_type}-{next(self._prep_ids)}",
                participant_type=participant.participant_type,
                name=participant.display_name,
                member_id=participant.player_member_id,
                monster_id=participant.monster_id,
                monster_slug=slugs.get(participant.monster_id),
                hp=participant.current_hp,
                max_hp=participant.max_hp,
                temporary_hp=participant.temporary_hp,
                ac=participant.armor_class,
                initiative_roll=participant.initiative_roll,
            )
            for participant in participants
        ]
        self.encounter = None
        self.participants = []
        self._track()
        logger.info("Loaded saved encounter %s into preparation", encounter_id)
        return CommandResult.applied({"encounter_id": encounter_id, "entries": len(self.preparation)})

    def delete_encounter(self, encounter_id: str) -> CommandResult:
        """Purge a stored encounter and its participants."""
        if self.encounter is not None and self.encounter.id == encounter_id and self.phase is Phase.ACTIVE:
            return self._skip("End the combat before deleting it")
        try:
            self.repository.delete_encounter(encounter_id)
        except TrackerError as exc:
            return self._failure(f"delete encounter {encounter_id}", exc)
        if self.encounter is not None and self.encounter.id == encounter_id:
            self.encounter = None
            self.participants = []
            self._track()
        return CommandResult.applied({"deleted": encounter_id})

    # -- hp and conditions -------------------------------------------------

    def apply_hp_delta(self, participant_id: str, amount: int, mode: str) -> CommandResult:
        if amount <= 0:
            return CommandResult.skipped("Amount must be positive")
        if mode not in ("damage", "heal"):
            return self._skip(f"Unknown HP mode {mode}")
        participant = self._active_participant(participant_id)
        if participant is None:
            return self._skip(f"Participant {participant_id} is not in an active encounter")

        if mode == "damage":
            current_hp = max(0, participant.current_hp - amount)
        else:
            current_hp = min(participant.max_hp, participant.current_hp + amount)
        return self._commit_participant(participant, {"current_hp": current_hp}, "update HP")

    def toggle_condition(self, participant_id: str, tag: str) -> CommandResult:
        participant = self._active_participant(participant_id)
        if participant is None:
            return self._skip(f"Participant {participant_id} is not in an active encounter")
        if tag in participant.conditions:
            conditions = [condition for condition in participant.conditions if condition != tag]
        else:
            conditions = [*participant.conditions, tag]
        return self._commit_participant(participant, {"conditions": conditions}, "update conditions")

    def update_participant(self, participant_id: str, /, **changes: Any) -> CommandResult:
        participant = self._active_participant(participant_id)
        if participant is None:
            return self._skip(f"Participant {participant_id} is not in an active encounter")
        unknown = set(changes) - EDITABLE_PARTICIPANT_FIELDS
        if unknown:
            return self._skip(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        try:
            patch = _coerce_participant_changes(changes)
        except (TypeError, ValueError) as exc:
            return self._skip(f"Invalid participant fields: {exc}")
        if "max_hp" in patch:
            patch["max_hp"] = max(0, patch["max_hp"])
        max_hp = patch.get("max_hp", participant.max_hp)
        current_hp = patch.get("current_hp", participant.current_hp)
        if current_hp > max_hp or "current_hp" in patch:
            patch["current_hp"] = max(0, min(max_hp, current_hp))
        if "temporary_hp" in patch:
            patch["temporary_hp"] = max(0, patch["temporary_hp"])
        return self._commit_participant(participant, patch, "update participant")

    def apply_synced_hp(self, participant_id: str, updates: dict[str, int]) -> CommandResult:
        """Project a remote character HP change onto its participant row."""
        position = self._position_of(participant_id)
        if position is None:
            return CommandResult.skipped(f"Unknown participant {participant_id}")
        participant = self.participants[position]
        patch = {key: int(value) for key, value in updates.items() if key in HP_FIELDS}
        return self._commit_participant(participant, patch, "sync HP", propagate=False)

    # -- internals ---------------------------------------------------------

    def _commit_encounter(self, patch: dict[str, Any], action: str) -> CommandResult:
        rollback = self._snapshot()
        self.encounter = replace(self.encounter, **patch)
        try:
            self.encounter = self.repository.update_encounter(self.encounter.id, patch)
        except TrackerError as exc:
            return self._failure(action, exc, rollback)
        return CommandResult.applied(patch)

    def _commit_participant(
        self,
        participant: Participant,
        patch: dict[str, Any],
        action: str,
        propagate: bool = True,
    ) -> CommandResult:
        rollback = self._snapshot()
        optimistic = replace(
            participant,
            **{key: tuple(value) if key == "conditions" else value for key, value in patch.items()},
        )
        self._replace_participant(optimistic)
        try:
            stored = self.repository.update_participant(participant.id, patch)
            self._replace_participant(stored)
            rollback = self._resync()
            if propagate and self.hp_sync is not None and HP_FIELDS & set(patch):
                self.hp_sync.push_local_hp(stored)
        except TrackerError as exc:
            return self._failure(action, exc, rollback)
        return CommandResult.applied({"participant_id": participant.id, **patch})

    def _replace_participant(self, participant: Participant) -> None:
        self.participants = [participant if p.id == participant.id else p for p in self.participants]

    def _active_participant(self, participant_id: str) -> Participant | None:
        if self.phase is not Phase.ACTIVE:
            return None
        position = self._position_of(participant_id)
        return None if position is None else self.participants[position]

    def _position_of(self, participant_id: str) -> int | None:
        for position, participant in enumerate(self.participants):
            if participant.id == participant_id:
                return position
        return None

    def _saved_monster(self, monster_id: str) -> dict[str, Any] | None:
        return next((monster for monster in self.saved_monsters if monster.get("id") == monster_id), None)

    def _resolve_monster(self, ref: str) -> dict[str, Any]:
        for monster in self.saved_monsters:
            if monster.get("id") == ref or monster.get("slug") == ref:
                return monster
        detail = self.catalog.get_monster(ref)
        saved = self.repository.save_monster(self.campaign_id, detail)
        self.saved_monsters = [*self.saved_monsters, saved]
        return saved

    def _member_entry(self, member: CampaignMember) -> PreparationEntry:
        character: dict[str, Any] = {}
        if member.player_id:
            try:
                character = self.repository.get_character(member.player_id)
            except RecordNotFoundError:
                logger.warning("Member %s references missing character %s", member.id, member.player_id)
        return PreparationEntry(
            id=f"prep-player-{member.id}",
            participant_type="player",
            name=member.display_name,
            member_id=member.id,
            hp=int(character.get("current_hp") or 0),
            max_hp=int(character.get("max_hp") or 0),
            temporary_hp=int(character.get("temporary_hp") or 0),
            ac=int(character.get("armor_class") or 10),
        )

    def _member_entries(self) -> list[PreparationEntry]:
        return [self._member_entry(member) for member in self.members if member.is_active]

    def _row_from_entry(self, encounter_id: str, entry: PreparationEntry, position: int) -> dict[str, Any]:
        monster_id = entry.monster_id
        if entry.participant_type == "monster" and monster_id is None and entry.monster_slug:
            monster_id = next(
                (m.get("id") for m in self.saved_monsters if m.get("slug") == entry.monster_slug),
                None,
            )
        return {
            "encounter_id": encounter_id,
            "participant_type": entry.participant_type,
            "monster_id": monster_id,
            "player_member_id": entry.member_id,
            "display_name": entry.name,
            "initiative_roll": entry.initiative_roll,
            "current_hp": entry.hp,
            "max_hp": entry.max_hp or entry.hp,
            "temporary_hp": entry.temporary_hp,
            "armor_class": entry.ac,
            "conditions": [],
            "sort_order": position,
            "is_active": True,
            "notes": "",
        }

    def _tracked_participants(self) -> list[Participant]:
        return self.participants if self.phase is Phase.ACTIVE else []

    def _track(self) -> None:
        if self.hp_sync is not None:
            self.hp_sync.track(self.members, self._tracked_participants())

    def _snapshot(self) -> Callable[[], None]:
        encounter = self.encounter
        participants = list(self.participants)
        preparation = list(self.preparation)

        def restore() -> None:
            self.encounter = encounter
            self.participants = participants
            self.preparation = preparation
            self._track()

        return restore

    def _resync(self) -> Callable[[], None]:
        """Rollback for commands that failed after a write already landed.

        The pre-command snapshot no longer matches the store at that point, so
        the hook re-reads the encounter and its participants instead.
        """

        def restore() -> None:
            if self.encounter is None:
                return
            encounter_id = self.encounter.id
            try:
                encounter = self.repository.get_encounter(encounter_id)
                participants = self.repository.list_participants(encounter_id)
            except TrackerError as exc:
                logger.error("Failed to re-read encounter %s: %s", encounter_id, exc)
                return
            self.encounter = self._repair_turn_index(encounter, len(participants))
            self.participants = participants
            self._track()

        return restore

    def _repair_turn_index(self, encounter: Encounter, count: int) -> Encounter:
        if 0 <= encounter.current_turn_index < max(count, 1):
            return encounter
        logger.warning(
            "Encounter %s turn index %d is outside %d participants, resetting to 0",
            encounter.id,
            encounter.current_turn_index,
            count,
        )
        try:
            return self.repository.update_encounter(encounter.id, {"current_turn_index": 0})
        except TrackerError as exc:
            logger.error("Failed to persist repaired turn index for %s: %s", encounter.id, exc)
            return replace(encounter, current_turn_index=0)

    def _skip(self, message: str) -> CommandResult:
        logger.warning("Intent skipped: %s", message)
        return CommandResult.skipped(message)

    def _failure(self, action: str, exc: Exception, rollback: Callable[[], None] | None = None) -> CommandResult:
        logger.error("Failed to %s: %s", action, exc)
        return CommandResult.failed(f"Failed to {action}: {exc}", rollback_fn=rollback)

    def close(self) -> None:
        if self.hp_sync is not None:
            self.hp_sync.close()


def _numbered(name: str, index: int, count: int) -> str:
    return f"{name} {index + 1}" if count > 1 else name


def _by_name(monsters: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(monsters, key=lambda monster: str(monster.get("name", "")))


def _coerce_participant_changes(changes: dict[str, Any]) -> dict[str, Any]:
    """Normalise edited participant fields to their column types, raising on junk."""
    patch: dict[str, Any] = {}
    for key, value in changes.items():
        if key in INTEGER_PARTICIPANT_FIELDS:
            if isinstance(value, bool):
                raise TypeError(f"{key} must be a number")
            patch[key] = int(value)
        elif key == "display_name":
            if not isinstance(value, str) or not value.strip():
                raise ValueError("display_name must be a non-empty string")
            patch[key] = value.strip()
        elif key == "is_active":
            if not isinstance(value, bool):
                raise TypeError("is_active must be true or false")
            patch[key] = value
        elif key == "notes":
            patch[key] = "" if value is None else str(value)
    return patch
