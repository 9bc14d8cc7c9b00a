"""Dispatch of presentation-layer intents onto the lifecycle controller."""

from __future__ import annotations

import uuid
from typing import Any, Callable

from gmtracker.backend.controller import EncounterLifecycleController
from gmtracker.backend.models import CommandResult, PreparationEntry, SourceRef

IntentHandler = Callable[[EncounterLifecycleController, dict[str, Any]], CommandResult]


def dispatch_intent(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    """Route an intent such as ``{"type": "NEXT_TURN"}`` to the controller."""
    intent_type = str(intent.get("type", "")).upper()
    handler = _HANDLERS.get(intent_type)
    if handler is None:
        return CommandResult.skipped(f"Unknown intent {intent_type or '<missing>'}")
    return handler(controller, intent)


def _text(intent: dict[str, Any], key: str) -> str | None:
    value = intent.get(key)
    if not isinstance(value, str) or value == "":
        return None
    return value


def _number(intent: dict[str, Any], key: str, default: int = 0) -> int:
    try:
        return int(intent.get(key, default))
    except (TypeError, ValueError):
        return default


def _missing(key: str) -> CommandResult:
    return CommandResult.skipped(f"Intent field '{key}' is required")


def _add_preparation_entry(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    entry = intent.get("entry")
    if not isinstance(entry, dict) or not _text(entry, "name"):
        return _missing("entry.name")
    hp = _number(entry, "hp")
    return controller.add_to_preparation(
        PreparationEntry(
            id=_text(entry, "id") or f"prep-custom-{uuid.uuid4().hex[:8]}",
            participant_type="player" if entry.get("type") == "player" else "monster",
            name=entry["name"],
            member_id=_text(entry, "memberId"),
            monster_slug=_text(entry, "monsterSlug"),
            hp=hp,
            max_hp=_number(entry, "maxHp", hp),
            ac=_number(entry, "ac", 10),
            initiative_roll=_number(entry, "initiative"),
        )
    )


def _remove_preparation_entry(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    entry_id = _text(intent, "entryId")
    if entry_id is None:
        return _missing("entryId")
    return controller.remove_from_preparation(entry_id)


def _set_preparation_initiative(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    entry_id = _text(intent, "entryId")
    if entry_id is None:
        return _missing("entryId")
    return controller.set_preparation_initiative(entry_id, _number(intent, "initiative"))


def _add_monster_to_preparation(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    slug = _text(intent, "slug")
    if slug is None:
        return _missing("slug")
    return controller.add_monster_to_preparation(slug, _number(intent, "count", 1))


def _add_participant(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    participant_type = "player" if intent.get("participantType") == "player" else "monster"
    source = SourceRef(participant_type=participant_type, ref=_text(intent, "ref"))
    return controller.add_participant(source, _number(intent, "count", 1))


def _with_participant(method: str) -> IntentHandler:
    def handler(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
        participant_id = _text(intent, "participantId")
        if participant_id is None:
            return _missing("participantId")
        return getattr(controller, method)(participant_id)

    return handler


def _with_encounter(method: str) -> IntentHandler:
    def handler(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
        encounter_id = _text(intent, "encounterId")
        if encounter_id is None:
            return _missing("encounterId")
        return getattr(controller, method)(encounter_id)

    return handler


def _hp_delta(mode: str) -> IntentHandler:
    def handler(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
        participant_id = _text(intent, "participantId")
        if participant_id is None:
            return _missing("participantId")
        return controller.apply_hp_delta(participant_id, _number(intent, "amount"), mode)

    return handler


def _toggle_condition(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    participant_id = _text(intent, "participantId")
    condition = _text(intent, "condition")
    if participant_id is None or condition is None:
        return _missing("participantId/condition")
    return controller.toggle_condition(participant_id, condition)


def _update_participant(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    participant_id = _text(intent, "participantId")
    changes = intent.get("changes")
    if participant_id is None or not isinstance(changes, dict) or not changes:
        return _missing("participantId/changes")
    return controller.update_participant(participant_id, **changes)


def _update_campaign_monster(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    monster_id = _text(intent, "monsterId")
    changes = intent.get("changes")
    if monster_id is None or not isinstance(changes, dict) or not changes:
        return _missing("monsterId/changes")
    return controller.update_campaign_monster(monster_id, changes)


def _delete_campaign_monster(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    monster_id = _text(intent, "monsterId")
    if monster_id is None:
        return _missing("monsterId")
    return controller.delete_campaign_monster(monster_id)


def _import_monsters(controller: EncounterLifecycleController, intent: dict[str, Any]) -> CommandResult:
    monsters = intent.get("monsters")
    if isinstance(monsters, dict):
        monsters = [monsters]
    if not isinstance(monsters, list) or not monsters:
        return _missing("monsters")
    return controller.import_monsters(monsters)


_HANDLERS: dict[str, IntentHandler] = {
    "ADD_PREPARATION_ENTRY": _add_preparation_entry,
    "REMOVE_PREPARATION_ENTRY": _remove_preparation_entry,
    "SET_PREPARATION_INITIATIVE": _set_preparation_initiative,
    "ADD_MONSTER_TO_PREPARATION": _add_monster_to_preparation,
    "ROLL_MONSTER_INITIATIVE": lambda controller, intent: controller.roll_all_monster_initiative(),
    "LAUNCH": lambda controller, intent: controller.launch(str(intent.get("name") or "")),
    "SAVE_FOR_LATER": lambda controller, intent: controller.save_for_later(str(intent.get("name") or "")),
    "NEXT_TURN": lambda controller, intent: controller.next_turn(),
    "SORT_BY_INITIATIVE": lambda controller, intent: controller.sort_by_initiative_now(),
    "ADD_PARTICIPANT": _add_participant,
    "REMOVE_PARTICIPANT": _with_participant("remove_participant"),
    "END_COMBAT": lambda controller, intent: controller.end_combat(),
    "RESET_PREPARATION": lambda controller, intent: controller.reset_preparation(),
    "LOAD_SAVED_ENCOUNTER": _with_encounter("load_saved_encounter"),
    "DELETE_ENCOUNTER": _with_encounter("delete_encounter"),
    "APPLY_DAMAGE": _hp_delta("damage"),
    "APPLY_HEAL": _hp_delta("heal"),
    "TOGGLE_CONDITION": _toggle_condition,
    "UPDATE_PARTICIPANT": _update_participant,
    "UPDATE_CAMPAIGN_MONSTER": _update_campaign_monster,
    "DELETE_CAMPAIGN_MONSTER": _delete_campaign_monster,
    "IMPORT_MONSTERS": _import_monsters,
}
