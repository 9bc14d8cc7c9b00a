"""Read-only bestiary catalog backed by the hosted monster lookup function."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from gmtracker.backend.errors import CatalogLookupError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10

_SKILLS_ARTIFACT = re.compile(r"^[éèe]tences\b\s*", re.IGNORECASE)
_SAVES_ARTIFACT = re.compile(r"^contre\s", re.IGNORECASE)
_NON_SLUG = re.compile(r"[^a-z0-9]+")
_HTML_TAG = re.compile(r"<[^>]*>")
_LEADING_INT = re.compile(r"\s*(-?\d+)")


class BestiaryCatalog(Protocol):
    def list_monsters(self) -> list[dict[str, Any]]:
        """Return the catalog summary list; cached until ``invalidate``."""

    def get_monster(self, slug: str) -> dict[str, Any]:
        """Return the full stat block for ``slug`` or raise CatalogLookupError."""

    def invalidate(self) -> None:
        """Drop the cached summary list."""


def clean_stat_block(data: dict[str, Any]) -> dict[str, Any]:
    """Strip scraping artifacts the upstream parser leaves in a stat block."""
    block = dict(data)
    skills = block.get("skills")
    if isinstance(skills, str) and _SKILLS_ARTIFACT.match(skills):
        block["skills"] = _SKILLS_ARTIFACT.sub("", skills)
    saves = block.get("saving_throws")
    if isinstance(saves, str) and _SAVES_ARTIFACT.match(saves):
        block["saving_throws"] = ""
    block["source"] = block.get("source") or "aidedd"
    return block


def slugify(name: str) -> str:
    return _NON_SLUG.sub("-", name.lower()).strip("-")


def unique_monster_name(name: str, existing: set[str]) -> str:
    """Suffix ``name`` with `` (2)``, `` (3)`` ... until it is not in ``existing``."""
    candidate = name
    counter = 2
    while candidate in existing:
        candidate = f"{name} ({counter})"
        counter += 1
    return candidate


def parse_monster_json(data: Any) -> dict[str, Any]:
    """Convert an exported character-builder monster into a campaign stat block.

    Raises ValueError when the payload has no name or no ``stats`` section.
    """
    if not isinstance(data, dict) or not data.get("name") or not isinstance(data.get("stats"), dict):
        raise ValueError("invalid monster JSON: name and stats are required")
    stats = data["stats"]
    flavor = data.get("flavor") if isinstance(data.get("flavor"), dict) else {}
    scores = stats.get("abilityScores") if isinstance(stats.get("abilityScores"), dict) else {}
    name = str(data["name"])

    hit_dice = _positive_int(stats.get("numHitDie")) or 1
    die_size = _positive_int(stats.get("hitDieSize")) or 8
    con_modifier = (_int_or(scores.get("constitution"), 10) - 10) // 2 if scores else 0
    extra_hp = hit_dice * con_modifier
    sign = "+" if extra_hp >= 0 else "-"
    average_hp = hit_dice * (die_size + 1) // 2 + extra_hp
    hit_points = (
        _positive_int(stats.get("hitPoints"))
        or _positive_int(_leading_int(stats.get("hitPointsStr")))
        or (average_hp if average_hp > 0 else 10)
    )

    speed = stats.get("speed")
    if isinstance(speed, str):
        speed = {"walk": speed}
    elif not isinstance(speed, dict):
        speed = {}

    return {
        "source": "custom",
        "slug": slugify(name),
        "name": name,
        "size": str(stats.get("size") or "Medium"),
        "type": str(stats.get("race") or "Unknown"),
        "alignment": str(stats.get("alignment") or "Unaligned"),
        "armor_class": _positive_int(stats.get("armorClass")) or 10,
        "armor_desc": str(stats.get("armorType") or stats.get("armorTypeStr") or ""),
        "hit_points": hit_points,
        "hit_points_formula": f"{hit_dice}d{die_size} {sign} {abs(extra_hp)}",
        "speed": speed,
        "abilities": {
            short: scores.get(long) or 10
            for short, long in (
                ("str", "strength"),
                ("dex", "dexterity"),
                ("con", "constitution"),
                ("int", "intelligence"),
                ("wis", "wisdom"),
                ("cha", "charisma"),
            )
        },
        "saving_throws": ", ".join(
            f"{str(entry.get('ability', ''))[:3].capitalize()} {_signed(entry.get('modifier'))}"
            for entry in _dicts(stats.get("savingThrows"))
        ),
        "skills": ", ".join(
            f"{entry.get('name', '')} {_signed(entry.get('modifier'))}" for entry in _dicts(stats.get("skills"))
        ),
        "vulnerabilities": _joined(stats.get("damageVulnerabilities")),
        "resistances": _joined(stats.get("damageResistances")),
        "damage_immunities": _joined(stats.get("damageImmunities")),
        "condition_immunities": _joined(stats.get("conditionImmunities")),
        "senses": _joined(stats.get("senses")),
        "languages": _joined(stats.get("languages")),
        "challenge_rating": str(stats.get("challengeRating", "0")),
        "xp": _int_or(stats.get("experiencePoints"), 0),
        "traits": _entries(stats.get("additionalAbilities")),
        "actions": _entries(stats.get("actions")),
        "bonus_actions": [],
        "reactions": _entries(stats.get("reactions")),
        "legendary_actions": _entries(stats.get("legendaryActions")),
        "legendary_description": str(stats.get("legendaryActionsDescription") or ""),
        "image_url": str(flavor["imageUrl"]) if flavor.get("imageUrl") else None,
    }


def _int_or(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _positive_int(value: Any) -> int:
    number = _int_or(value, 0)
    return number if number > 0 else 0


def _leading_int(value: Any) -> int | None:
    match = _LEADING_INT.match(value) if isinstance(value, str) else None
    return int(match.group(1)) if match else None


def _signed(value: Any) -> str:
    number = _int_or(value, 0)
    return f"+{number}" if number >= 0 else str(number)


def _joined(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(item) for item in value)
    return value if isinstance(value, str) else ""


def _dicts(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _entries(value: Any) -> list[dict[str, str]]:
    return [
        {
            "name": str(entry.get("name") or ""),
            "description": _HTML_TAG.sub("", str(entry.get("description") or "")).replace("&nbsp;", " ").strip(),
        }
        for entry in _dicts(value)
    ]


@dataclass
class HttpBestiaryCatalog:
    base_url: str
    api_key: str
    session: Any = None

    def __post_init__(self) -> None:
        self.base_url = self.base_url.rstrip("/")
        if self.session is None:
            self.session = requests.Session()
        self._list_cache: list[dict[str, Any]] | None = None

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _get(self, params: dict[str, str], failure: str) -> Any:
        try:
            response = self.session.get(
                self.base_url,
                headers=self._headers(),
                params=params,
                timeout=REQUEST_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise CatalogLookupError(f"{failure}: {exc}") from exc
        except ValueError as exc:
            raise CatalogLookupError(f"{failure}: invalid JSON payload") from exc

    def list_monsters(self) -> list[dict[str, Any]]:
        if self._list_cache is not None:
            return self._list_cache
        data = self._get({"action": "list"}, "Bestiary list unavailable")
        if not isinstance(data, list):
            raise CatalogLookupError("Bestiary list unavailable: unexpected payload")
        self._list_cache = data
        logger.info("Cached %d bestiary entries", len(data))
        return self._list_cache

    def get_monster(self, slug: str) -> dict[str, Any]:
        data = self._get({"action": "detail", "slug": slug}, f"Monster not found: {slug}")
        if not isinstance(data, dict):
            raise CatalogLookupError(f"Monster not found: {slug}")
        return clean_stat_block(data)

    def invalidate(self) -> None:
        self._list_cache = None


@dataclass
class InMemoryBestiaryCatalog:
    monsters: dict[str, dict[str, Any]] = field(default_factory=dict)

    def list_monsters(self) -> list[dict[str, Any]]:
        return [
            {
                "name": monster.get("name", slug),
                "slug": slug,
                "cr": str(monster.get("challenge_rating", "")),
                "type": monster.get("type", ""),
                "size": monster.get("size", ""),
                "ac": str(monster.get("armor_class", "")),
                "hp": str(monster.get("hit_points", "")),
                "source": monster.get("source", "custom"),
            }
            for slug, monster in sorted(self.monsters.items())
        ]

    def get_monster(self, slug: str) -> dict[str, Any]:
        monster = self.monsters.get(slug)
        if monster is None:
            raise CatalogLookupError(f"Monster not found: {slug}")
        return {"slug": slug, **monster}

    def invalidate(self) -> None:
        return None


def create_catalog(base_url: str | None, api_key: str | None) -> BestiaryCatalog:
    if base_url:
        return HttpBestiaryCatalog(base_url=base_url, api_key=api_key or "")
    return InMemoryBestiaryCatalog()
