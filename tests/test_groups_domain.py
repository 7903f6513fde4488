from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi import HTTPException

from runtime_fakes import FakeDvmRuntime, build_state

from drone_hub.store import InMemoryRegistryStore


class GroupsDomainTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.runtime = FakeDvmRuntime()
        self.store = InMemoryRegistryStore()
        self.state = build_state(Path(tmp.name), store=self.store, runtime=self.runtime)
        self.groups = self.state.groups_domain
        self.lifecycle = self.state.lifecycle_domain

    def _group(self, name: str) -> dict:
        listing = self.groups.list_groups()
        matches = [group for group in listing["groups"] if group["name"] == name]
        self.assertEqual(len(matches), 1, listing)
        return matches[0]

    def assertStatus(self, status: int, func, *args, **kwargs) -> None:
        with self.assertRaises(HTTPException) as ctx:
            func(*args, **kwargs)
        self.assertEqual(ctx.exception.status_code, status)

    def test_empty_group_lifecycle(self) -> None:
        self.groups.create_group("team")
        self.assertEqual(self._group("team")["totalCount"], 0)

        renamed = self.groups.rename_group("team", "crew")
        self.assertEqual(renamed["moved"], [])
        self.assertEqual(self._group("crew")["totalCount"], 0)

        deleted = self.groups.delete_group("crew")
        self.assertTrue(deleted["deleted"])
        self.assertEqual(self.groups.list_groups()["groups"], [])

    def test_duplicate_and_reserved_names(self) -> None:
        self.groups.create_group("team")
        self.assertStatus(409, self.groups.create_group, "team")
        self.assertStatus(400, self.groups.create_group, "ungrouped")
        self.assertStatus(400, self.groups.create_group, "Ungrouped")
        self.assertStatus(400, self.groups.create_group, "a/b")
        self.assertStatus(400, self.groups.create_group, "")
        self.assertStatus(400, self.groups.rename_group, "ungrouped", "x")
        self.assertStatus(400, self.groups.delete_group, "ungrouped")

    def test_rename_unknown_and_onto_existing(self) -> None:
        self.groups.create_group("a")
        self.groups.create_group("b")
        self.assertStatus(404, self.groups.rename_group, "ghost", "c")
        self.assertStatus(409, self.groups.rename_group, "a", "b")

    def test_group_survives_last_member_removal(self) -> None:
        self.lifecycle.create(name="d1", group="team")

        self.lifecycle.remove("d1")

        group = self._group("team")
        self.assertEqual(group["totalCount"], 0)
        self.assertFalse(group["implicit"])

    def test_rename_moves_members(self) -> None:
        self.lifecycle.create(name="d1", group="team")
        self.lifecycle.create(name="d2", group="team")
        self.lifecycle.create(name="d3")

        result = self.groups.rename_group("team", "crew")

        self.assertEqual(result["moved"], ["d1", "d2"])
        self.assertEqual(self.lifecycle.summary("d1")["group"], "crew")
        self.assertIsNone(self.lifecycle.summary("d3")["group"])
        self.assertEqual(self.groups.list_groups()["ungroupedCount"], 1)

    def test_delete_cascades_to_members(self) -> None:
        self.lifecycle.create(name="d1", group="team")
        self.lifecycle.create(name="d2", group="team")

        result = self.groups.delete_group("team")

        self.assertTrue(result["deleted"])
        self.assertEqual(result["removed"], ["d1", "d2"])
        self.assertEqual(result["removedCount"], 2)
        self.assertEqual(self.store.read()["drones"], {})
        self.assertEqual(self.runtime.containers, {})

    def test_delete_keeps_group_when_a_member_fails(self) -> None:
        self.lifecycle.create(name="d1", group="team")
        self.runtime.remove_failures = 3

        result = self.groups.delete_group("team")

        self.assertFalse(result["deleted"])
        self.assertEqual([error["name"] for error in result["errors"]], ["d1"])
        self.assertEqual(result["removedCount"], 0)
        self.assertIn("team", self.store.read()["groups"])
        self.assertIn("d1", self.store.read()["drones"])

    def test_assign_drones_creates_group_and_reports_missing(self) -> None:
        self.lifecycle.create(name="d1")

        result = self.groups.assign_drones(["d1", "ghost"], "team")

        self.assertEqual(result["group"], "team")
        self.assertEqual([item["name"] for item in result["moved"]], ["d1"])
        self.assertEqual(result["missing"], ["ghost"])
        self.assertEqual(self._group("team")["drones"], ["d1"])

        cleared = self.groups.assign_drones(["d1"], "ungrouped")
        self.assertIsNone(cleared["group"])
        self.assertIsNone(self.lifecycle.summary("d1")["group"])

    def test_implicit_groups_from_legacy_records_are_listed(self) -> None:
        store = InMemoryRegistryStore(
            {"drones": {"d1": {"name": "d1", "group": "old", "containerPort": 7777}}, "groups": {}}
        )
        state = build_state(Path(tempfile.gettempdir()), store=store, runtime=self.runtime)

        listing = state.groups_domain.list_groups()

        self.assertEqual(listing["groups"][0]["name"], "old")
        self.assertTrue(listing["groups"][0]["implicit"])
        self.assertEqual(listing["groups"][0]["totalCount"], 1)


if __name__ == "__main__":
    unittest.main()
