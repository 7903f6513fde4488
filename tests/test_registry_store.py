from __future__ import annotations

import json
import sys
import tempfile
import threading
from pathlib import Path
from threading import Lock
from unittest.mock import patch

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from drone_core.errors import RegistryError
from drone_hub.store import InMemoryRegistryStore, RegistryStore
from drone_hub.store import registry_store as registry_store_module
from drone_hub.store.records import (
    drone_name_taken,
    find_drone,
    new_drone_record,
    new_group_record,
    normalize_registry,
    reindex_drones,
    vacate_drone_key,
)


def _store_for(path: Path) -> RegistryStore:
    return RegistryStore(registry_file=path, lock=Lock())


def _insert_drone(name: str, **kwargs):
    def mutate(registry):
        registry["drones"][name] = new_drone_record(name=name, container_port=7777, token="t", **kwargs)

    return mutate


def test_read_missing_file_returns_empty_registry() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        store = _store_for(Path(tmp) / "registry.json")
        assert store.read() == {"version": 1, "drones": {}, "groups": {}}


def test_update_persists_and_returns_new_state() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        registry_file = Path(tmp) / "registry.json"
        store = _store_for(registry_file)

        result = store.update(_insert_drone("d1"))

        assert result["drones"]["d1"]["containerPort"] == 7777
        persisted = json.loads(registry_file.read_text(encoding="utf-8"))
        assert persisted["drones"]["d1"]["name"] == "d1"
        assert list(Path(tmp).glob(".registry.json.*.tmp")) == []


def test_mutator_error_leaves_prior_state_untouched() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        registry_file = Path(tmp) / "registry.json"
        store = _store_for(registry_file)
        store.update(_insert_drone("d1"))
        before = registry_file.read_text(encoding="utf-8")

        def failing(registry):
            registry["drones"].clear()
            raise RuntimeError("mutator failed")

        with pytest.raises(RuntimeError, match="mutator failed"):
            store.update(failing)

        assert registry_file.read_text(encoding="utf-8") == before
        assert "d1" in store.read()["drones"]


def test_failed_write_raises_registry_error_and_keeps_prior_document() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        registry_file = Path(tmp) / "registry.json"
        store = _store_for(registry_file)
        store.update(_insert_drone("d1"))
        before = registry_file.read_text(encoding="utf-8")

        with patch.object(registry_store_module.os, "replace", side_effect=PermissionError(13, "Permission denied")):
            with pytest.raises(RegistryError, match="Permission denied"):
                store.update(_insert_drone("d2"))

        assert registry_file.read_text(encoding="utf-8") == before
        assert sorted(store.read()["drones"]) == ["d1"]
        assert list(Path(tmp).glob(".registry.json.*.tmp")) == []


def test_corrupt_registry_is_preserved_and_reported() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        registry_file = Path(tmp) / "registry.json"
        registry_file.write_text("{not json", encoding="utf-8")
        store = _store_for(registry_file)

        with pytest.raises(RegistryError, match="corrupt JSON"):
            store.read()

        assert not registry_file.exists()
        preserved = list(Path(tmp).glob("registry.json.corrupt-*"))
        assert len(preserved) == 1
        assert preserved[0].read_text(encoding="utf-8") == "{not json"


def test_concurrent_updates_never_lose_writes() -> None:
    with tempfile.TemporaryDirectory() as tmp:
        store = _store_for(Path(tmp) / "registry.json")
        store.update(lambda registry: registry["groups"].setdefault("counter", {**new_group_record("counter"), "n": 0}))

        def bump(registry):
            registry["groups"]["counter"]["n"] += 1

        threads = [threading.Thread(target=lambda: [store.update(bump) for _ in range(10)]) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.read()["groups"]["counter"]["n"] == 80


def test_update_self_heals_drifted_keys() -> None:
    record = new_drone_record(name="actual-name", container_port=7777, token="t")
    store = InMemoryRegistryStore({"drones": {"legacy-key": record}, "groups": {}})

    assert "legacy-key" in store.read()["drones"]
    healed = store.update(lambda registry: None)

    assert list(healed["drones"]) == ["actual-name"]


def test_reindex_keeps_both_entries_when_names_collide() -> None:
    first = new_drone_record(name="dup", container_port=7777, token="a")
    second = new_drone_record(name="dup", container_port=7777, token="b")
    registry = {"drones": {"dup": first, "other": second}, "groups": {}}

    assert reindex_drones(registry) == []
    assert sorted(registry["drones"]) == ["dup", "other"]


def test_lookup_uses_record_fields_not_map_key() -> None:
    record = new_drone_record(name="real", container_port=7777, token="t")
    registry = normalize_registry({"drones": {"stale": record}, "groups": {}})

    assert find_drone(registry, "real")[0] == "stale"
    assert find_drone(registry, record["id"])[0] == "stale"
    assert find_drone(registry, "stale") is None


def test_name_taken_ignores_drifted_map_keys() -> None:
    record = new_drone_record(name="x", container_port=7777, token="t")
    registry = {"drones": {"b": record}, "groups": {}}

    assert drone_name_taken(registry, "b") is False
    assert drone_name_taken(registry, "x") is True
    assert drone_name_taken(registry, "x", except_id=record["id"]) is False


def test_vacate_drone_key_rekeys_occupant_without_dropping_it() -> None:
    occupant = new_drone_record(name="x", container_port=7777, token="t")
    squatter = new_drone_record(name="y", container_port=7777, token="t")
    registry = {"drones": {"b": occupant, "y": squatter}, "groups": {}}

    vacate_drone_key(registry, "b")
    assert registry["drones"]["x"] is occupant
    assert "b" not in registry["drones"]

    registry["drones"]["b"] = registry["drones"].pop("y")
    vacate_drone_key(registry, "b", keep_id=squatter["id"])
    assert registry["drones"]["b"] is squatter


def test_legacy_records_get_stable_ids_and_drop_ungrouped_sentinel() -> None:
    raw = {
        "drones": {"old": {"name": "old", "group": "Ungrouped", "chats": {"default": {}}}},
        "groups": {"ungrouped": {"name": "ungrouped"}, "team": {}},
    }

    first = normalize_registry(raw)
    second = normalize_registry(raw)

    assert first["drones"]["old"]["id"] == second["drones"]["old"]["id"]
    assert first["drones"]["old"]["group"] is None
    assert first["drones"]["old"]["chats"] == ["default"]
    assert list(first["groups"]) == ["team"]
