import json
from datetime import datetime, timezone

import pytest

from gmtracker.backend.errors import RecordNotFoundError, StoreError
from gmtracker.backend.models import CampaignMember
from gmtracker.backend.repository import (
    InMemoryEncounterRepository,
    PostgresEncounterRepository,
    create_repository,
    parse_change_payload,
)


def test_create_repository_returns_postgres_repository_when_database_url_present() -> None:
    repository = create_repository(database_url="postgresql://local")

    assert isinstance(repository, PostgresEncounterRepository)


def test_create_repository_returns_in_memory_repository_when_database_url_missing() -> None:
    repository = create_repository(database_url=None)

    assert isinstance(repository, InMemoryEncounterRepository)


def test_in_memory_encounter_defaults_and_updates() -> None:
    repository = InMemoryEncounterRepository()
    encounter = repository.create_encounter("camp", "Ambush")

    updated = repository.update_encounter(encounter.id, {"round_number": 3, "current_turn_index": 1, "bogus": 1})

    assert encounter.status == "active"
    assert encounter.saved is False
    assert (encounter.round_number, encounter.current_turn_index) == (1, 0)
    assert (updated.round_number, updated.current_turn_index) == (3, 1)
    assert repository.get_active_encounter("camp").id == encounter.id
    assert repository.get_active_encounter("other") is None


def test_in_memory_participants_are_ordered_and_deleted_with_encounter() -> None:
    repository = InMemoryEncounterRepository()
    encounter = repository.create_encounter("camp", "Ambush")
    repository.add_participants(
        [
            {"encounter_id": encounter.id, "participant_type": "monster", "display_name": "B", "sort_order": 1},
            {"encounter_id": encounter.id, "participant_type": "monster", "display_name": "A", "sort_order": 0},
        ]
    )

    names = [participant.display_name for participant in repository.list_participants(encounter.id)]
    repository.delete_encounter(encounter.id)

    assert names == ["A", "B"]
    assert repository.list_participants(encounter.id) == []


def test_in_memory_missing_records_raise() -> None:
    repository = InMemoryEncounterRepository()

    with pytest.raises(RecordNotFoundError) as excinfo:
        repository.get_encounter("enc-404")
    with pytest.raises(RecordNotFoundError):
        repository.update_participant("p-404", {"current_hp": 1})
    with pytest.raises(RecordNotFoundError):
        repository.update_character("c-404", {"current_hp": 1})

    assert str(excinfo.value) == "encounter record not found: enc-404"


def test_in_memory_update_character_publishes_change() -> None:
    repository = InMemoryEncounterRepository()
    repository.put_character({"id": "c1", "current_hp": 10})
    changes = []
    subscription = repository.subscribe_characters(["c1"], changes.append)

    repository.update_character("c1", {"current_hp": 4})
    subscription.unsubscribe()
    repository.update_character("c1", {"current_hp": 5})

    assert len(changes) == 1
    assert changes[0].record_id == "c1"
    assert changes[0].fields["current_hp"] == 4


def test_in_memory_members_and_monsters_are_scoped_to_campaign() -> None:
    repository = InMemoryEncounterRepository()
    repository.add_member(CampaignMember(id="m1", campaign_id="camp"))
    repository.add_member(CampaignMember(id="m2", campaign_id="other"))
    repository.save_monster("camp", {"slug": "orc", "name": "Orc"})
    repository.save_monster("camp", {"slug": "goblin", "name": "Goblin"})

    assert [member.id for member in repository.list_members("camp")] == ["m1"]
    assert [monster["name"] for monster in repository.list_campaign_monsters("camp")] == ["Goblin", "Orc"]
    assert repository.list_campaign_monsters("other") == []


def test_parse_change_payload_handles_valid_and_malformed_payloads() -> None:
    change = parse_change_payload(json.dumps({"id": "c1", "current_hp": 7, "temporary_hp": None}))

    assert change.record_id == "c1"
    assert change.fields["current_hp"] == 7
    assert parse_change_payload("not json") is None
    assert parse_change_payload(json.dumps({"current_hp": 7})) is None


class _FakeCursor:
    def __init__(self, results: list) -> None:
        self.commands: list[tuple[str, tuple]] = []
        self.results = results

    def execute(self, sql: str, params: tuple = ()) -> None:
        self.commands.append((sql, params))

    def fetchone(self):
        return self.results.pop(0) if self.results else None

    def fetchall(self):
        return self.results.pop(0) if self.results else []

    def __enter__(self) -> "_FakeCursor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _FakeConnection:
    def __init__(self, results: list) -> None:
        self.cursor_instance = _FakeCursor(results)
        self.committed = False

    def cursor(self) -> _FakeCursor:
        return self.cursor_instance

    def commit(self) -> None:
        self.committed = True

    def __enter__(self) -> "_FakeConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


class _PostgresRepositoryWithFakeConnection(PostgresEncounterRepository):
    def __init__(self, *results) -> None:
        super().__init__(database_url="postgresql://local")
        self.fake_connection = _FakeConnection(list(results))

    def _connect(self) -> _FakeConnection:
        return self.fake_connection


def _encounter_row(**overrides) -> dict:
    row = {
        "id": "enc-1",
        "campaign_id": "camp",
        "name": "Ambush",
        "status": "active",
        "saved": False,
        "round_number": 1,
        "current_turn_index": 0,
        "created_at": datetime(2026, 1, 2, tzinfo=timezone.utc),
        "updated_at": datetime(2026, 1, 2, tzinfo=timezone.utc),
    }
    row.update(overrides)
    return row


def test_postgres_update_encounter_builds_single_update() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection(_encounter_row(round_number=2, current_turn_index=0))

    encounter = repository.update_encounter("enc-1", {"current_turn_index": 0, "round_number": 2})

    sql, params = repository.fake_connection.cursor_instance.commands[0]
    assert sql.startswith("UPDATE campaign_encounters SET ")
    assert "current_turn_index = %s" in sql
    assert "round_number = %s" in sql
    assert params[:2] == (0, 2)
    assert params[-1] == "enc-1"
    assert encounter.round_number == 2
    assert encounter.created_at == "2026-01-02T00:00:00+00:00"
    assert repository.fake_connection.committed is True


def test_postgres_update_participant_serializes_conditions() -> None:
    pytest.importorskip("psycopg")
    row = {
        "id": "p1",
        "encounter_id": "enc-1",
        "participant_type": "monster",
        "display_name": "Goblin",
        "conditions": ["Prone"],
        "created_at": None,
    }
    repository = _PostgresRepositoryWithFakeConnection(row)

    participant = repository.update_participant("p1", {"conditions": ["Prone"]})

    _, params = repository.fake_connection.cursor_instance.commands[0]
    assert params == ('["Prone"]', "p1")
    assert participant.conditions == ("Prone",)


def test_postgres_update_participant_without_known_columns_raises() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection()

    with pytest.raises(StoreError):
        repository.update_participant("p1", {"unknown": 1})


def test_postgres_get_encounter_raises_when_row_missing() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection()

    with pytest.raises(RecordNotFoundError):
        repository.get_encounter("enc-404")


def test_postgres_update_character_merges_json_patch() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection({"id": "c1", "data": {"current_hp": 4, "max_hp": 10}})

    character = repository.update_character("c1", {"current_hp": 4})

    sql, params = repository.fake_connection.cursor_instance.commands[0]
    assert "data = data || %s::jsonb" in sql
    assert json.loads(params[0]) == {"current_hp": 4}
    assert params[-1] == "c1"
    assert character == {"current_hp": 4, "max_hp": 10, "id": "c1"}


def test_postgres_list_campaign_monsters_unpacks_json_data() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection(
        [{"id": "mon-1", "campaign_id": "camp", "data": json.dumps({"slug": "orc", "name": "Orc"})}]
    )

    monsters = repository.list_campaign_monsters("camp")

    assert monsters == [{"slug": "orc", "name": "Orc", "id": "mon-1", "campaign_id": "camp"}]


def test_postgres_add_participants_inserts_each_row() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection(
        {"id": "p1", "encounter_id": "enc-1", "participant_type": "monster", "display_name": "A", "conditions": "[]"},
        {"id": "p2", "encounter_id": "enc-1", "participant_type": "monster", "display_name": "B", "conditions": "[]"},
    )

    added = repository.add_participants(
        [
            {"encounter_id": "enc-1", "participant_type": "monster", "display_name": "A"},
            {"encounter_id": "enc-1", "participant_type": "monster", "display_name": "B"},
        ]
    )

    commands = repository.fake_connection.cursor_instance.commands
    assert len(commands) == 2
    assert all(sql.strip().startswith("INSERT INTO encounter_participants") for sql, _ in commands)
    assert [participant.id for participant in added] == ["p1", "p2"]
    assert added[0].conditions == ()


def test_in_memory_campaign_monster_update_and_delete() -> None:
    repository = InMemoryEncounterRepository()
    saved = repository.save_monster("camp", {"slug": "orc", "name": "Orc", "hit_points": 15})

    updated = repository.update_campaign_monster(saved["id"], {"hit_points": 20, "campaign_id": "other"})
    repository.delete_campaign_monster(saved["id"])

    assert updated["hit_points"] == 20
    assert updated["campaign_id"] == "camp"
    assert repository.list_campaign_monsters("camp") == []
    with pytest.raises(RecordNotFoundError):
        repository.delete_campaign_monster(saved["id"])
    with pytest.raises(RecordNotFoundError):
        repository.update_campaign_monster(saved["id"], {"name": "Orc"})


def test_postgres_update_campaign_monster_merges_json_data() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection(
        {"id": "mon-1", "campaign_id": "camp", "data": {"slug": "orc", "name": "Orc Boss", "hit_points": 15}}
    )

    monster = repository.update_campaign_monster("mon-1", {"name": "Orc Boss", "id": "other"})

    sql, params = repository.fake_connection.cursor_instance.commands[0]
    assert "data = data || %s::jsonb" in sql
    assert json.loads(params[0]) == {"name": "Orc Boss"}
    assert params[1:3] == (None, "Orc Boss")
    assert params[-1] == "mon-1"
    assert monster == {"slug": "orc", "name": "Orc Boss", "hit_points": 15, "id": "mon-1", "campaign_id": "camp"}


def test_postgres_delete_campaign_monster_raises_when_row_missing() -> None:
    pytest.importorskip("psycopg")
    repository = _PostgresRepositoryWithFakeConnection({"id": "mon-1"})

    repository.delete_campaign_monster("mon-1")
    with pytest.raises(RecordNotFoundError):
        repository.delete_campaign_monster("mon-2")

    sql, params = repository.fake_connection.cursor_instance.commands[0]
    assert sql.startswith("DELETE FROM campaign_monsters")
    assert params == ("mon-1",)
