import pytest

from gmtracker.backend.errors import RecordNotFoundError
from gmtracker.backend.repository import InMemoryEncounterRepository
from gmtracker.backend.rest import (
    CLASS_RESOURCES,
    ResourceDescriptor,
    apply_rest,
    build_long_rest_update,
    build_short_rest_update,
    get_custom_resource_max_value,
    get_hit_die_size,
    restorable_resources,
)


class _ScriptedRng:
    def __init__(self, *values: int) -> None:
        self.values = list(values)
        self.calls: list[tuple[int, int]] = []

    def randint(self, low: int, high: int) -> int:
        self.calls.append((low, high))
        return self.values.pop(0)


def _cleric(**overrides) -> dict:
    character = {
        "id": "char-1",
        "class": "Cleric",
        "level": 5,
        "current_hp": 20,
        "max_hp": 40,
        "temporary_hp": 3,
        "hit_dice": {"total": 5, "used": 1},
        "abilities": [{"name": "Constitution", "score": 14, "modifier": 2}],
        "class_resources": {"used_channel_divinity": 1},
        "spell_slots": {"level1": 4, "used1": 3, "level2": 3, "used2": 1},
    }
    character.update(overrides)
    return character


def test_hit_die_size_accepts_localized_class_names() -> None:
    assert get_hit_die_size("Barbarian") == 12
    assert get_hit_die_size("Magicien") == 6
    assert get_hit_die_size("Artificer") == 8
    assert get_hit_die_size(None) == 8


def test_short_rest_rolls_hit_dice_with_constitution() -> None:
    rng = _ScriptedRng(3, 6)

    result = build_short_rest_update(_cleric(), hit_dice_to_use=2, selected_resource_ids=[], rng=rng)

    assert rng.calls == [(1, 8), (1, 8)]
    assert result.healing == 13
    assert result.update_data["current_hp"] == 33
    assert result.update_data["hit_dice"] == {"total": 5, "used": 3}
    assert result.restored_labels == ["+13 HP (2 hit dice)"]


def test_short_rest_caps_dice_and_hp() -> None:
    rng = _ScriptedRng(8)
    character = _cleric(current_hp=38, hit_dice={"total": 5, "used": 4})

    result = build_short_rest_update(character, hit_dice_to_use=3, selected_resource_ids=[], rng=rng)

    assert len(rng.calls) == 1
    assert result.update_data["hit_dice"]["used"] == 5
    assert result.update_data["current_hp"] == 40
    assert result.restored_labels == ["+10 HP (1 hit die)"]


def test_short_rest_heals_at_least_one_per_die() -> None:
    character = _cleric(abilities=[{"name": "Constitution", "score": 4}])

    result = build_short_rest_update(character, hit_dice_to_use=2, selected_resource_ids=[], rng=_ScriptedRng(1, 2))

    assert result.healing == 2


def test_short_rest_without_dice_or_selection_is_a_no_op() -> None:
    result = build_short_rest_update(_cleric(), hit_dice_to_use=0, selected_resource_ids=[])

    assert result.update_data == {}
    assert result.restored_labels == []
    assert result.healing == 0


def test_short_rest_restores_selected_ki_points() -> None:
    monk = {
        "id": "char-2",
        "class": "Moine",
        "level": 6,
        "class_resources": {"ki_points": 6, "used_ki_points": 4},
    }

    listed = restorable_resources(monk, "short")
    result = build_short_rest_update(monk, hit_dice_to_use=0, selected_resource_ids=["ki_points"])

    assert [(r.id, r.current, r.max, r.rest_type) for r in listed] == [("ki_points", 2, 6, "both")]
    assert result.update_data["class_resources"]["used_ki_points"] == 0
    assert result.restored_labels == ["+6 ki points"]


def test_short_rest_ignores_unselected_resources() -> None:
    monk = {"id": "char-2", "class": "Monk", "level": 4, "class_resources": {"used_ki_points": 2}}

    result = build_short_rest_update(monk, hit_dice_to_use=0, selected_resource_ids=[])

    assert result.update_data == {}


def test_secondary_warlock_pact_slots_are_restorable() -> None:
    character = {
        "id": "char-3",
        "class": "Fighter",
        "level": 5,
        "secondary_class": "Warlock",
        "secondary_level": 3,
        "secondary_spell_slots": {"pact_slots": 2, "used_pact_slots": 2},
    }

    listed = restorable_resources(character, "short")
    result = build_short_rest_update(character, hit_dice_to_use=0, selected_resource_ids=["secondary_pact_slots"])

    assert [(r.id, r.name) for r in listed] == [("secondary_pact_slots", "Pact slots (secondary)")]
    assert result.update_data == {"secondary_spell_slots": {"pact_slots": 2, "used_pact_slots": 0}}
    assert result.restored_labels == ["+2 pact slots (secondary)"]


def test_paladin_channel_divinity_needs_level_three_and_restores_one_use() -> None:
    low_level = {"class": "Paladin", "level": 2, "class_resources": {"used_channel_divinity": 1}}
    paladin = {"class": "Paladin", "level": 7, "class_resources": {"used_channel_divinity": 2}}

    result = build_short_rest_update(paladin, hit_dice_to_use=0, selected_resource_ids=["channel_divinity_paladin"])

    assert restorable_resources(low_level, "short") == []
    assert [r.id for r in restorable_resources(paladin, "short")] == ["channel_divinity_paladin"]
    assert result.update_data["class_resources"]["used_channel_divinity"] == 1
    assert result.restored_labels == ["+1 Channel Divinity"]


def test_wizard_arcane_recovery_flag_is_reset() -> None:
    wizard = {
        "class": "Wizard",
        "level": 4,
        "class_resources": {"used_arcane_recovery": True, "arcane_recovery_slots_used": 2},
    }

    result = build_short_rest_update(wizard, hit_dice_to_use=0, selected_resource_ids=["arcane_recovery"])

    assert result.update_data["class_resources"] == {
        "used_arcane_recovery": False,
        "arcane_recovery_slots_used": 0,
    }
    assert result.restored_labels == ["Arcane Recovery available"]


def _custom_character() -> dict:
    return {
        "id": "char-4",
        "class": "Custom",
        "level": 5,
        "abilities": [{"name": "Charisme", "score": 16}],
        "custom_class_data": {
            "is_custom": True,
            "resources": [
                {"id": "focus", "name": "Focus", "max_value": "level", "short_rest": True, "long_rest": True},
                {
                    "id": "aura",
                    "name": "Aura",
                    "max_value": "modifier",
                    "modifier_ability": "Charisma",
                    "short_rest": False,
                    "long_rest": True,
                },
            ],
        },
        "class_resources": {
            "custom_resources": {"focus": {"current": 1, "used": 4}, "aura": {"current": 0, "used": 3}},
        },
    }


def test_custom_resources_follow_their_rest_flags() -> None:
    character = _custom_character()

    short = restorable_resources(character, "short")
    long = restorable_resources(character, "long")

    assert [(r.id, r.current, r.max, r.rest_type) for r in short] == [("custom_focus", 1, 5, "both")]
    assert [(r.id, r.max, r.rest_type) for r in long] == [("custom_focus", 5, "both"), ("custom_aura", 3, "long")]


def test_short_rest_restores_custom_resource() -> None:
    result = build_short_rest_update(
        _custom_character(),
        hit_dice_to_use=0,
        selected_resource_ids=["custom_focus", "custom_aura"],
    )

    state = result.update_data["class_resources"]["custom_resources"]
    assert state["focus"] == {"current": 5, "used": 0}
    assert state["aura"] == {"current": 0, "used": 3}
    assert result.restored_labels == ["+4 Focus"]


def test_custom_resource_max_value_variants() -> None:
    character = {"abilities": [{"name": "Sagesse", "modifier": -1}]}

    assert get_custom_resource_max_value({"max_value": 3}, 7, character) == 3
    assert get_custom_resource_max_value({"max_value": "level"}, 7, character) == 7
    assert get_custom_resource_max_value({"max_value": "modifier", "modifier_ability": "Wisdom"}, 7, character) == 1
    assert get_custom_resource_max_value({}, 7, character) == 1


def test_long_rest_restores_everything() -> None:
    character = _cleric(
        hit_dice={"total": 5, "used": 4},
        is_concentrating=True,
        concentration_spell="Bless",
        secondary_class="Warlock",
        secondary_class_resources={"used_rage": 1},
        secondary_spell_slots={"pact_slots": 1, "used_pact_slots": 1},
    )

    result = build_long_rest_update(character)
    update = result.update_data

    assert update["current_hp"] == 40
    assert update["temporary_hp"] == 0
    assert update["hit_dice"] == {"total": 5, "used": 2}
    assert update["is_concentrating"] is False
    assert update["concentration_spell"] is None
    assert update["class_resources"]["used_channel_divinity"] == 0
    assert update["class_resources"]["used_arcane_recovery"] is False
    assert update["spell_slots"]["used1"] == 0
    assert update["spell_slots"]["level1"] == 4
    assert update["secondary_class_resources"]["used_rage"] == 0
    assert update["secondary_spell_slots"]["used_pact_slots"] == 0
    assert result.restored_labels == [
        "HP restored to maximum",
        "+2 hit dice",
        "Spell slots restored",
        "All class resources restored",
    ]


def test_long_rest_recovers_at_least_one_hit_die() -> None:
    result = build_long_rest_update(_cleric(level=1, hit_dice={"total": 1, "used": 1}))

    assert result.update_data["hit_dice"] == {"total": 1, "used": 0}
    assert "+1 hit die" in result.restored_labels


def test_long_rest_refills_long_rest_custom_resources() -> None:
    result = build_long_rest_update(_custom_character())

    state = result.update_data["class_resources"]["custom_resources"]
    assert state["focus"] == {"current": 5, "used": 0}
    assert state["aura"] == {"current": 3, "used": 0}


def test_apply_rest_commits_patch_to_character_record() -> None:
    repository = InMemoryEncounterRepository()
    repository.put_character(_cleric())

    result = apply_rest(repository, "char-1", "short", hit_dice_to_use=2, rng=_ScriptedRng(3, 6))

    stored = repository.get_character("char-1")
    assert result.healing == 13
    assert stored["current_hp"] == 33
    assert stored["hit_dice"] == {"total": 5, "used": 3}


def test_apply_rest_raises_for_unknown_character() -> None:
    with pytest.raises(RecordNotFoundError):
        apply_rest(InMemoryEncounterRepository(), "missing", "long")


def test_resource_descriptor_base_cannot_be_instantiated() -> None:
    class _InspectOnly(ResourceDescriptor):
        def inspect(self, sheet):
            return None

    with pytest.raises(TypeError):
        ResourceDescriptor(id="ki_points", name="Ki")
    with pytest.raises(TypeError):
        _InspectOnly(id="ki_points", name="Ki")
    assert all(
        isinstance(descriptor, ResourceDescriptor)
        for descriptors in CLASS_RESOURCES.values()
        for descriptor in descriptors
    )
