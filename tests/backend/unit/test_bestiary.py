import pytest
import requests

from gmtracker.backend.bestiary import (
    HttpBestiaryCatalog,
    InMemoryBestiaryCatalog,
    clean_stat_block,
    create_catalog,
    parse_monster_json,
    unique_monster_name,
)
from gmtracker.backend.errors import CatalogLookupError


class _FakeResponse:
    def __init__(self, payload, status_error: Exception | None = None) -> None:
        self.payload = payload
        self.status_error = status_error

    def raise_for_status(self) -> None:
        if self.status_error is not None:
            raise self.status_error

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class _FakeSession:
    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "params": params, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_create_catalog_picks_http_when_url_configured() -> None:
    assert isinstance(create_catalog("https://example.test/fn", "key"), HttpBestiaryCatalog)
    assert isinstance(create_catalog(None, None), InMemoryBestiaryCatalog)


def test_list_monsters_is_cached_until_invalidated() -> None:
    session = _FakeSession(
        _FakeResponse([{"name": "Goblin", "slug": "goblin"}]),
        _FakeResponse([{"name": "Orc", "slug": "orc"}]),
    )
    catalog = HttpBestiaryCatalog(base_url="https://example.test/fn/", api_key="secret", session=session)

    first = catalog.list_monsters()
    second = catalog.list_monsters()
    catalog.invalidate()
    third = catalog.list_monsters()

    assert first == second == [{"name": "Goblin", "slug": "goblin"}]
    assert third == [{"name": "Orc", "slug": "orc"}]
    assert len(session.calls) == 2
    assert session.calls[0]["url"] == "https://example.test/fn"
    assert session.calls[0]["params"] == {"action": "list"}
    assert session.calls[0]["headers"]["Authorization"] == "Bearer secret"
    assert session.calls[0]["timeout"] == 10


def test_get_monster_cleans_stat_block() -> None:
    session = _FakeSession(
        _FakeResponse({"name": "Goblin", "skills": "étences Discrétion +6", "saving_throws": "contre la peur"})
    )
    catalog = HttpBestiaryCatalog(base_url="https://example.test/fn", api_key="secret", session=session)

    monster = catalog.get_monster("goblin")

    assert session.calls[0]["params"] == {"action": "detail", "slug": "goblin"}
    assert monster["skills"] == "Discrétion +6"
    assert monster["saving_throws"] == ""
    assert monster["source"] == "aidedd"


def test_get_monster_maps_transport_errors() -> None:
    session = _FakeSession(requests.ConnectionError("offline"))
    catalog = HttpBestiaryCatalog(base_url="https://example.test/fn", api_key="secret", session=session)

    with pytest.raises(CatalogLookupError, match="Monster not found: dragon"):
        catalog.get_monster("dragon")


def test_get_monster_maps_http_errors() -> None:
    session = _FakeSession(_FakeResponse({}, status_error=requests.HTTPError("404")))
    catalog = HttpBestiaryCatalog(base_url="https://example.test/fn", api_key="secret", session=session)

    with pytest.raises(CatalogLookupError):
        catalog.get_monster("dragon")


def test_list_monsters_rejects_invalid_payloads() -> None:
    session = _FakeSession(_FakeResponse(ValueError("bad json")), _FakeResponse({"error": "nope"}))
    catalog = HttpBestiaryCatalog(base_url="https://example.test/fn", api_key="secret", session=session)

    with pytest.raises(CatalogLookupError, match="invalid JSON"):
        catalog.list_monsters()
    with pytest.raises(CatalogLookupError, match="unexpected payload"):
        catalog.list_monsters()


def test_clean_stat_block_keeps_clean_values() -> None:
    block = clean_stat_block({"skills": "Perception +4", "saving_throws": "Dex +5", "source": "srd"})

    assert block == {"skills": "Perception +4", "saving_throws": "Dex +5", "source": "srd"}


def test_in_memory_catalog_lists_and_fetches() -> None:
    catalog = InMemoryBestiaryCatalog({"goblin": {"name": "Goblin", "hit_points": 7, "armor_class": 15}})

    summary = catalog.list_monsters()

    assert summary[0]["slug"] == "goblin"
    assert summary[0]["hp"] == "7"
    assert catalog.get_monster("goblin")["slug"] == "goblin"
    with pytest.raises(CatalogLookupError):
        catalog.get_monster("dragon")


def test_parse_monster_json_maps_exported_stat_block() -> None:
    monster = parse_monster_json(
        {
            "name": "Ash Drake!",
            "flavor": {"imageUrl": "https://img.example/drake.png"},
            "stats": {
                "armorClass": "17",
                "numHitDie": 4,
                "hitDieSize": 10,
                "abilityScores": {"strength": 19, "constitution": 16},
                "speed": "30 ft.",
                "savingThrows": [{"ability": "dexterity", "modifier": 3}],
                "skills": [{"name": "Perception", "modifier": -1}],
                "damageImmunities": ["fire", "poison"],
                "actions": [{"name": "Bite", "description": "<b>Melee</b>&nbsp;hit"}],
                "challengeRating": 3,
            },
        }
    )

    assert monster["slug"] == "ash-drake"
    assert monster["armor_class"] == 17
    assert monster["hit_points"] == 34
    assert monster["hit_points_formula"] == "4d10 + 12"
    assert monster["speed"] == {"walk": "30 ft."}
    assert monster["abilities"]["str"] == 19
    assert monster["abilities"]["dex"] == 10
    assert monster["saving_throws"] == "Dex +3"
    assert monster["skills"] == "Perception -1"
    assert monster["damage_immunities"] == "fire, poison"
    assert monster["actions"] == [{"name": "Bite", "description": "Melee hit"}]
    assert monster["challenge_rating"] == "3"
    assert monster["image_url"] == "https://img.example/drake.png"


def test_parse_monster_json_prefers_explicit_hit_points() -> None:
    assert parse_monster_json({"name": "Ogre", "stats": {"hitPoints": 59}})["hit_points"] == 59
    assert parse_monster_json({"name": "Ogre", "stats": {"hitPointsStr": "45 (7d10 + 7)"}})["hit_points"] == 45
    assert parse_monster_json({"name": "Imp", "stats": {}})["hit_points"] == 4


@pytest.mark.parametrize("payload", [None, [], {"name": "No stats"}, {"stats": {"hitPoints": 3}}])
def test_parse_monster_json_rejects_incomplete_documents(payload) -> None:
    with pytest.raises(ValueError):
        parse_monster_json(payload)


def test_unique_monster_name_appends_counter() -> None:
    assert unique_monster_name("Orc", set()) == "Orc"
    assert unique_monster_name("Orc", {"Orc", "Orc (2)"}) == "Orc (3)"
