"""Short and long rest rules for character sheets.

Each class that owns a rest-restorable resource declares it through a descriptor
in ``CLASS_RESOURCES``. Descriptors know how to report the resource as
restorable and how to restore it on a copy of the character's resource and
spell-slot dicts. The builders below are pure: they return a patch plus
human-readable labels and leave committing the patch to the caller.
"""

from __future__ import annotations

import abc
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from gmtracker.backend.models import RestorableResource, RestType, RestUpdate

logger = logging.getLogger(__name__)


STANDARD_RESOURCE_KEYS = (
    "used_rage",
    "used_bardic_inspiration",
    "used_channel_divinity",
    "used_wild_shape",
    "used_sorcery_points",
    "used_action_surge",
    "used_credo_points",
    "used_ki_points",
    "used_lay_on_hands",
    "used_favored_foe",
    "used_innate_sorcery",
    "used_supernatural_metabolism",
)

SPELL_SLOT_USAGE_KEYS = tuple(f"used{level}" for level in range(1, 10)) + ("used_pact_slots",)

HIT_DIE_SIZES = {
    "Barbarian": 12,
    "Fighter": 10,
    "Paladin": 10,
    "Ranger": 10,
    "Bard": 8,
    "Cleric": 8,
    "Druid": 8,
    "Monk": 8,
    "Rogue": 8,
    "Warlock": 8,
    "Wizard": 6,
    "Sorcerer": 6,
}
DEFAULT_HIT_DIE = 8

# Class names as stored by the French-language character sheets.
CLASS_ALIASES = {
    "Barbare": "Barbarian",
    "Guerrier": "Fighter",
    "Rôdeur": "Ranger",
    "Barde": "Bard",
    "Clerc": "Cleric",
    "Druide": "Druid",
    "Moine": "Monk",
    "Roublard": "Rogue",
    "Occultiste": "Warlock",
    "Magicien": "Wizard",
    "Ensorceleur": "Sorcerer",
}

ABILITY_ALIASES = {
    "Strength": ("Strength", "strength", "Force", "force", "STR", "str"),
    "Dexterity": ("Dexterity", "dexterity", "Dextérité", "Dexterite", "dexterite", "DEX", "dex"),
    "Constitution": ("Constitution", "constitution", "CON", "con"),
    "Intelligence": ("Intelligence", "intelligence", "INT", "int"),
    "Wisdom": ("Wisdom", "wisdom", "Sagesse", "sagesse", "WIS", "wis"),
    "Charisma": ("Charisma", "charisma", "Charisme", "charisme", "CHA", "cha"),
}


def canonical_class(class_name: str | None) -> str | None:
    if not class_name:
        return None
    return CLASS_ALIASES.get(class_name, class_name)


def get_hit_die_size(class_name: str | None) -> int:
    return HIT_DIE_SIZES.get(canonical_class(class_name) or "", DEFAULT_HIT_DIE)


def ability_modifier(character: dict[str, Any], ability: str) -> int:
    """Return the modifier for ``ability``, accepting localized ability names."""
    abilities = character.get("abilities")
    if not isinstance(abilities, list):
        return 0
    names = ABILITY_ALIASES.get(ability, (ability,))
    for entry in abilities:
        if not isinstance(entry, dict) or entry.get("name") not in names:
            continue
        if isinstance(entry.get("modifier"), int):
            return entry["modifier"]
        if isinstance(entry.get("score"), int):
            return (entry["score"] - 10) // 2
    return 0


def get_custom_resource_max_value(resource: dict[str, Any], level: int, character: dict[str, Any]) -> int:
    max_value = resource.get("max_value")
    if isinstance(max_value, int) and not isinstance(max_value, bool):
        return max_value
    if max_value == "level":
        return level
    if max_value == "modifier" and resource.get("modifier_ability"):
        return max(1, ability_modifier(character, resource["modifier_ability"]))
    return 1


@dataclass(frozen=True)
class _Scope:
    prefix: str
    suffix: str
    class_key: str
    level_key: str
    resources_key: str
    slots_key: str


PRIMARY = _Scope("", "", "class", "level", "class_resources", "spell_slots")
SECONDARY = _Scope(
    "secondary_",
    " (secondary)",
    "secondary_class",
    "secondary_level",
    "secondary_class_resources",
    "secondary_spell_slots",
)


@dataclass
class _Sheet:
    """Working copy of one class's resource and spell-slot dicts."""

    scope: _Scope
    class_name: str | None
    level: int
    resources: dict[str, Any]
    slots: dict[str, Any]
    touched: set[str] = field(default_factory=set)

    @classmethod
    def of(cls, character: dict[str, Any], scope: _Scope) -> "_Sheet":
        return cls(
            scope=scope,
            class_name=canonical_class(character.get(scope.class_key)),
            level=int(character.get(scope.level_key) or 1),
            resources=dict(character.get(scope.resources_key) or {}),
            slots=dict(character.get(scope.slots_key) or {}),
        )

    def patch(self) -> dict[str, Any]:
        update: dict[str, Any] = {}
        if "resources" in self.touched:
            update[self.scope.resources_key] = self.resources
        if "slots" in self.touched:
            update[self.scope.slots_key] = self.slots
        return update


def _sheets(character: dict[str, Any]) -> Iterator[_Sheet]:
    yield _Sheet.of(character, PRIMARY)
    if character.get("secondary_class"):
        yield _Sheet.of(character, SECONDARY)


def _first_number(values: dict[str, Any], keys: Iterable[str]) -> int | None:
    for key in keys:
        if values.get(key) is not None:
            return int(values[key])
    return None


@dataclass(frozen=True)
class ResourceDescriptor(abc.ABC):
    id: str
    name: str

    @abc.abstractmethod
    def inspect(self, sheet: _Sheet) -> tuple[int, int] | None:
        """Return ``(current, max)`` when the resource has been spent."""

    @abc.abstractmethod
    def restore(self, sheet: _Sheet) -> str | None:
        """Restore the resource on ``sheet`` and return its feedback label."""


@dataclass(frozen=True)
class PoolResource(ResourceDescriptor):
    """A point pool sized by a stored total or, failing that, the class level."""

    total_keys: tuple[str, ...] = ()
    used_keys: tuple[str, ...] = ()

    def _total(self, sheet: _Sheet) -> int:
        total = _first_number(sheet.resources, self.total_keys)
        return sheet.level if total is None else total

    def inspect(self, sheet: _Sheet) -> tuple[int, int] | None:
        used = _first_number(sheet.resources, self.used_keys) or 0
        if used <= 0:
            return None
        total = self._total(sheet)
        return total - used, total

    def restore(self, sheet: _Sheet) -> str | None:
        for key in self.used_keys:
            sheet.resources[key] = 0
        sheet.touched.add("resources")
        return f"+{self._total(sheet)} {self.name.lower()}"


@dataclass(frozen=True)
class PactSlotResource(ResourceDescriptor):
    def inspect(self, sheet: _Sheet) -> tuple[int, int] | None:
        pact_slots = int(sheet.slots.get("pact_slots") or 0)
        used = int(sheet.slots.get("used_pact_slots") or 0)
        if used <= 0 or pact_slots <= 0:
            return None
        return pact_slots - used, pact_slots

    def restore(self, sheet: _Sheet) -> str | None:
        pact_slots = int(sheet.slots.get("pact_slots") or 0)
        sheet.slots["used_pact_slots"] = 0
        sheet.touched.add("slots")
        if pact_slots <= 0:
            return None
        return f"+{pact_slots} pact slot{'s' if pact_slots > 1 else ''}"


@dataclass(frozen=True)
class FlagResource(ResourceDescriptor):
    """A once-per-rest feature tracked by a boolean ``used`` flag."""

    flag_key: str = ""
    counter_key: str | None = None

    def inspect(self, sheet: _Sheet) -> tuple[int, int] | None:
        if not sheet.resources.get(self.flag_key):
            return None
        return 0, 1

    def restore(self, sheet: _Sheet) -> str | None:
        sheet.resources[self.flag_key] = False
        if self.counter_key:
            sheet.resources[self.counter_key] = 0
        sheet.touched.add("resources")
        return f"{self.name} available"


@dataclass(frozen=True)
class SingleUseResource(ResourceDescriptor):
    """A counter of which a short rest gives back exactly one use."""

    used_key: str = ""
    min_level: int = 1

    def inspect(self, sheet: _Sheet) -> tuple[int, int] | None:
        used = int(sheet.resources.get(self.used_key) or 0)
        if used <= 0 or sheet.level < self.min_level:
            return None
        return 0, 1

    def restore(self, sheet: _Sheet) -> str | None:
        before = int(sheet.resources.get(self.used_key) or 0)
        sheet.resources[self.used_key] = max(0, before - 1)
        sheet.touched.add("resources")
        if before <= 0:
            return None
        return f"+1 {self.name}"


CLASS_RESOURCES: dict[str, tuple[ResourceDescriptor, ...]] = {
    "Monk": (
        PoolResource(
            id="ki_points",
            name="Ki points",
            total_keys=("credo_points", "ki_points"),
            used_keys=("used_credo_points", "used_ki_points"),
        ),
    ),
    "Warlock": (PactSlotResource(id="pact_slots", name="Pact slots"),),
    "Wizard": (
        FlagResource(
            id="arcane_recovery",
            name="Arcane Recovery",
            flag_key="used_arcane_recovery",
            counter_key="arcane_recovery_slots_used",
        ),
    ),
    "Paladin": (
        SingleUseResource(
            id="channel_divinity_paladin",
            name="Channel Divinity",
            used_key="used_channel_divinity",
            min_level=3,
        ),
    ),
}


def _custom_resources(character: dict[str, Any]) -> list[dict[str, Any]]:
    custom = character.get("custom_class_data") or {}
    if not custom.get("is_custom"):
        return []
    return [resource for resource in custom.get("resources") or [] if isinstance(resource, dict)]


def _custom_rest_type(resource: dict[str, Any]) -> str:
    if resource.get("short_rest") and resource.get("long_rest"):
        return "both"
    return "short" if resource.get("short_rest") else "long"


def restorable_resources(character: dict[str, Any], rest_type: RestType) -> list[RestorableResource]:
    """List spent resources the player may choose to restore on ``rest_type``.

    Class resources are always listed because a long rest also restores them;
    custom resources only when their own rest flag matches.
    """
    resources: list[RestorableResource] = []
    for sheet in _sheets(character):
        for descriptor in CLASS_RESOURCES.get(sheet.class_name or "", ()):
            inspected = descriptor.inspect(sheet)
            if inspected is None:
                continue
            current, maximum = inspected
            resources.append(
                RestorableResource(
                    id=f"{sheet.scope.prefix}{descriptor.id}",
                    name=f"{descriptor.name}{sheet.scope.suffix}",
                    kind="standard",
                    current=current,
                    max=maximum,
                    rest_type="both",
                )
            )

    level = int(character.get("level") or 1)
    state = (character.get("class_resources") or {}).get("custom_resources") or {}
    for resource in _custom_resources(character):
        eligible = resource.get("short_rest") if rest_type == "short" else resource.get("long_rest")
        if not eligible:
            continue
        maximum = get_custom_resource_max_value(resource, level, character)
        used = int((state.get(resource["id"]) or {}).get("used") or 0)
        if used <= 0:
            continue
        resources.append(
            RestorableResource(
                id=f"custom_{resource['id']}",
                name=resource.get("name", resource["id"]),
                kind="custom",
                current=maximum - used,
                max=maximum,
                rest_type=_custom_rest_type(resource),
                icon=resource.get("icon"),
                color=resource.get("color"),
            )
        )
    return resources


def build_short_rest_update(
    character: dict[str, Any],
    hit_dice_to_use: int,
    selected_resource_ids: Iterable[str],
    rng: Any = random,
) -> RestUpdate:
    labels: list[str] = []
    update: dict[str, Any] = {}
    selected = set(selected_resource_ids)

    healing = 0
    dice_spent = 0
    hit_dice = character.get("hit_dice")
    if hit_dice_to_use > 0 and hit_dice:
        total = int(hit_dice.get("total") or 0)
        used = int(hit_dice.get("used") or 0)
        dice_spent = min(hit_dice_to_use, max(0, total - used))
        die_size = get_hit_die_size(character.get("class"))
        constitution = ability_modifier(character, "Constitution")
        for _ in range(dice_spent):
            healing += max(1, rng.randint(1, die_size) + constitution)
        if dice_spent > 0:
            labels.append(f"+{healing} HP ({dice_spent} hit {'dice' if dice_spent > 1 else 'die'})")
            update["hit_dice"] = {**hit_dice, "used": min(total, used + dice_spent)}

    if healing > 0:
        current_hp = int(character.get("current_hp") or 0)
        update["current_hp"] = min(int(character.get("max_hp") or 0), current_hp + healing)

    level = int(character.get("level") or 1)
    for sheet in _sheets(character):
        for descriptor in CLASS_RESOURCES.get(sheet.class_name or "", ()):
            if f"{sheet.scope.prefix}{descriptor.id}" not in selected:
                continue
            label = descriptor.restore(sheet)
            if label:
                labels.append(f"{label}{sheet.scope.suffix}")

        if sheet.scope is PRIMARY:
            state = dict(sheet.resources.get("custom_resources") or {})
            restored = False
            for resource in _custom_resources(character):
                if not resource.get("short_rest") or f"custom_{resource['id']}" not in selected:
                    continue
                old_used = int((state.get(resource["id"]) or {}).get("used") or 0)
                if old_used <= 0:
                    continue
                maximum = get_custom_resource_max_value(resource, level, character)
                state[resource["id"]] = {"current": maximum, "used": 0}
                labels.append(f"+{old_used} {resource.get('name', resource['id'])}")
                restored = True
            if restored:
                sheet.resources["custom_resources"] = state
                sheet.touched.add("resources")

        update.update(sheet.patch())

    logger.debug("Short rest for %s: healing=%s labels=%s", character.get("id"), healing, labels)
    return RestUpdate(update_data=update, restored_labels=labels, healing=healing)


def build_long_rest_update(character: dict[str, Any]) -> RestUpdate:
    level = int(character.get("level") or 1)
    update: dict[str, Any] = {}

    for sheet in _sheets(character):
        for key in STANDARD_RESOURCE_KEYS:
            sheet.resources[key] = 0
        sheet.resources["used_arcane_recovery"] = False
        sheet.resources["arcane_recovery_slots_used"] = 0
        for key in SPELL_SLOT_USAGE_KEYS:
            sheet.slots[key] = 0

        if sheet.scope is PRIMARY:
            long_rest_resources = [resource for resource in _custom_resources(character) if resource.get("long_rest")]
            if long_rest_resources:
                state = dict(sheet.resources.get("custom_resources") or {})
                for resource in long_rest_resources:
                    maximum = get_custom_resource_max_value(resource, level, character)
                    state[resource["id"]] = {"current": maximum, "used": 0}
                sheet.resources["custom_resources"] = state

        sheet.touched.update({"resources", "slots"})
        update.update(sheet.patch())

    hit_dice_recovered = max(1, level // 2)
    previously_used = int((character.get("hit_dice") or {}).get("used") or 0)
    update.update(
        {
            "current_hp": int(character.get("max_hp") or 0),
            "temporary_hp": 0,
            "hit_dice": {"total": level, "used": max(0, previously_used - hit_dice_recovered)},
            "is_concentrating": False,
            "concentration_spell": None,
        }
    )

    labels = [
        "HP restored to maximum",
        f"+{hit_dice_recovered} hit {'dice' if hit_dice_recovered > 1 else 'die'}",
        "Spell slots restored",
        "All class resources restored",
    ]
    return RestUpdate(update_data=update, restored_labels=labels)


def apply_rest(
    repository: Any,
    character_id: str,
    rest_type: RestType,
    hit_dice_to_use: int = 0,
    selected_resource_ids: Iterable[str] = (),
    rng: Any = random,
) -> RestUpdate:
    """Build the rest patch for a stored character and commit it."""
    character = repository.get_character(character_id)
    if rest_type == "long":
        result = build_long_rest_update(character)
    else:
        result = build_short_rest_update(character, hit_dice_to_use, selected_resource_ids, rng=rng)
    if result.update_data:
        repository.update_character(character_id, result.update_data)
    logger.info("Applied %s rest to character %s", rest_type, character_id)
    return result
