"""State builders for combat snapshots pushed to the presentation layer."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from gmtracker.backend.controller import EncounterLifecycleController


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_combat_state(controller: EncounterLifecycleController) -> dict[str, Any]:
    """Return the full combat view for one campaign as plain JSON data."""
    current = controller.current_participant
    return {
        "campaignId": controller.campaign_id,
        "phase": controller.phase.value,
        "encounter": controller.encounter.to_row() if controller.encounter else None,
        "participants": [participant.to_row() for participant in controller.participants],
        "currentParticipantId": current.id if current else None,
        "preparation": [asdict(entry) for entry in controller.preparation],
        "members": [asdict(member) for member in controller.members],
        "savedMonsters": [
            {
                "id": monster.get("id"),
                "slug": monster.get("slug"),
                "name": monster.get("name"),
                "armor_class": monster.get("armor_class"),
                "hit_points": monster.get("hit_points"),
                "challenge_rating": monster.get("challenge_rating"),
            }
            for monster in controller.saved_monsters
        ],
        "meta": {"generatedAt": _utc_now_iso()},
    }
