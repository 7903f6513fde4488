from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from fastapi import HTTPException

from runtime_fakes import FakeDaemonClient, FakeDvmRuntime, FlakyRegistryStore, build_state

from drone_core.errors import (
    CompensationFailedError,
    RolledBackError,
    RuntimeCommandError,
    RuntimeTimeoutError,
)
from drone_hub.domains.lifecycle_domain import parse_fs_list_output
from drone_hub.store import InMemoryRegistryStore
from drone_hub.store.records import new_drone_record


class _LifecycleTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.tmp_path = Path(tmp.name)
        self.runtime = FakeDvmRuntime()
        self.store = FlakyRegistryStore()
        self.daemon = FakeDaemonClient()
        self.state = build_state(self.tmp_path, store=self.store, runtime=self.runtime, daemon=self.daemon)
        self.lifecycle = self.state.lifecycle_domain

    def assertNotFound(self, ref: str) -> None:
        with self.assertRaises(HTTPException) as ctx:
            self.lifecycle.status(ref)
        self.assertEqual(ctx.exception.status_code, 404)


class CreateTests(_LifecycleTestCase):
    def test_create_registers_starting_drone_with_default_port(self) -> None:
        created = self.lifecycle.create(name="d1", group="team")

        self.assertEqual(created["phase"], "starting")
        self.assertEqual(created["containerPort"], 7777)
        self.assertEqual(created["hostPort"], 40100)
        registry = self.store.read()
        self.assertEqual(registry["drones"]["d1"]["id"], created["id"])
        self.assertIn("team", registry["groups"])
        self.assertEqual(self.runtime.tokens["d1"], registry["drones"]["d1"]["token"])

    def test_create_rejects_bad_names_before_touching_runtime(self) -> None:
        for bad in ("", "Upper", "has_underscore", "-lead", "a" * 49):
            with self.assertRaises(HTTPException) as ctx:
                self.lifecycle.create(name=bad)
            self.assertEqual(ctx.exception.status_code, 400)
        self.assertEqual(self.runtime.calls, [])

    def test_create_duplicate_name_conflicts(self) -> None:
        self.lifecycle.create(name="d1")
        with self.assertRaises(HTTPException) as ctx:
            self.lifecycle.create(name="d1")
        self.assertEqual(ctx.exception.status_code, 409)

    def test_failed_runtime_provision_leaves_no_registry_entry(self) -> None:
        self.runtime.create_error = RuntimeCommandError("dvm create failed: disk full")

        with self.assertRaises(RuntimeCommandError):
            self.lifecycle.create(name="d1")

        self.assertEqual(self.store.read()["drones"], {})

    def test_failed_registry_commit_removes_container(self) -> None:
        self.store.fail_writes = 1

        with self.assertRaises(RolledBackError):
            self.lifecycle.create(name="d1")

        self.assertNotIn("d1", self.runtime.containers)
        self.assertEqual(self.store.read()["drones"], {})

    def test_failed_token_write_removes_container(self) -> None:
        self.runtime.write_token_error = RuntimeCommandError("exec failed")

        with self.assertRaises(RolledBackError):
            self.lifecycle.create(name="d1")

        self.assertNotIn("d1", self.runtime.containers)


class RenameTests(_LifecycleTestCase):
    def test_rename_round_trip(self) -> None:
        created = self.lifecycle.create(name="a", container_port=8080)

        result = self.lifecycle.rename("a", "b")

        self.assertEqual(result["oldName"], "a")
        self.assertEqual(result["newName"], "b")
        self.assertNotFound("a")
        status = self.lifecycle.status("b")
        self.assertEqual(status["containerPort"], 8080)
        self.assertEqual(status["id"], created["id"])
        self.assertEqual(list(self.store.read()["drones"]), ["b"])
        self.assertIn("b", self.runtime.containers)

    def test_rename_to_same_name_is_a_no_op(self) -> None:
        self.lifecycle.create(name="a")
        result = self.lifecycle.rename("a", "a")
        self.assertEqual(result["renamed"], False)
        self.assertEqual(result["reason"], "same-name")

    def test_rename_unknown_and_taken_names(self) -> None:
        self.lifecycle.create(name="a")
        self.lifecycle.create(name="b")
        with self.assertRaises(HTTPException) as missing:
            self.lifecycle.rename("ghost", "c")
        self.assertEqual(missing.exception.status_code, 404)
        with self.assertRaises(HTTPException) as taken:
            self.lifecycle.rename("a", "b")
        self.assertEqual(taken.exception.status_code, 409)

    def test_registry_failure_rolls_container_back(self) -> None:
        self.lifecycle.create(name="a")
        self.store.fail_writes = 1

        with self.assertRaises(RolledBackError):
            self.lifecycle.rename("a", "b")

        self.assertEqual(self.lifecycle.status("a")["name"], "a")
        self.assertNotFound("b")
        self.assertIn("a", self.runtime.containers)
        self.assertNotIn("b", self.runtime.containers)
        self.assertEqual(self.runtime.calls[-2:], [("rename", "a", "b"), ("rename", "b", "a")])

    def test_failed_compensation_escalates(self) -> None:
        self.lifecycle.create(name="a")
        self.store.fail_writes = 1
        self.runtime.rename_script = [None, (False, RuntimeCommandError("dvm rename failed: daemon gone"))]

        with self.assertRaises(CompensationFailedError) as ctx:
            self.lifecycle.rename("a", "b")

        self.assertEqual(ctx.exception.failure_class, "operator_attention")
        self.assertIn("manual intervention", str(ctx.exception))

    def test_timed_out_rename_that_applied_is_reverted(self) -> None:
        self.lifecycle.create(name="a")
        self.runtime.rename_script = [(True, RuntimeTimeoutError("dvm rename timed out"))]

        with self.assertRaises(RuntimeTimeoutError):
            self.lifecycle.rename("a", "b")

        self.assertIn("a", self.runtime.containers)
        self.assertNotIn("b", self.runtime.containers)
        self.assertEqual(self.lifecycle.status("a")["name"], "a")

    def test_timed_out_rename_with_unknown_state_needs_operator(self) -> None:
        self.lifecycle.create(name="a")
        self.runtime.rename_script = [(True, RuntimeTimeoutError("dvm rename timed out"))]
        self.runtime.list_error = RuntimeTimeoutError("dvm ls timed out")

        with self.assertRaises(CompensationFailedError):
            self.lifecycle.rename("a", "b")

    def test_rename_by_name_tolerates_key_drift(self) -> None:
        record = new_drone_record(name="d1", container_port=7777, token="t", host_port=40100)
        store = InMemoryRegistryStore({"drones": {"legacy-key": record}, "groups": {}})
        self.runtime.containers["d1"] = {"ports": [{"hostPort": 40100, "containerPort": 7777}]}
        state = build_state(self.tmp_path, store=store, runtime=self.runtime, daemon=self.daemon)

        state.lifecycle_domain.rename("d1", "d2")

        drones = store.read()["drones"]
        self.assertEqual(list(drones), ["d2"])
        self.assertEqual(drones["d2"]["id"], record["id"])
        self.assertEqual(drones["d2"]["name"], "d2")

    def test_rename_onto_drifted_key_keeps_both_records(self) -> None:
        record_a = new_drone_record(name="a", container_port=7777, token="t", host_port=40100)
        record_x = new_drone_record(name="x", container_port=7777, token="t", host_port=40101)
        store = InMemoryRegistryStore({"drones": {"a": record_a, "b": record_x}, "groups": {}})
        self.runtime.containers["a"] = {"ports": [{"hostPort": 40100, "containerPort": 7777}]}
        self.runtime.containers["x"] = {"ports": [{"hostPort": 40101, "containerPort": 7777}]}
        state = build_state(self.tmp_path, store=store, runtime=self.runtime, daemon=self.daemon)

        result = state.lifecycle_domain.rename("a", "b")

        self.assertTrue(result["renamed"])
        drones = store.read()["drones"]
        self.assertEqual(sorted(drones), ["b", "x"])
        self.assertEqual(drones["b"]["id"], record_a["id"])
        self.assertEqual(drones["b"]["name"], "b")
        self.assertEqual(drones["x"]["id"], record_x["id"])

    def test_create_onto_drifted_key_keeps_existing_record(self) -> None:
        record_x = new_drone_record(name="x", container_port=7777, token="t", host_port=40150)
        store = InMemoryRegistryStore({"drones": {"b": record_x}, "groups": {}})
        self.runtime.containers["x"] = {"ports": [{"hostPort": 40150, "containerPort": 7777}]}
        state = build_state(self.tmp_path, store=store, runtime=self.runtime, daemon=self.daemon)

        created = state.lifecycle_domain.create(name="b")

        drones = store.read()["drones"]
        self.assertEqual(sorted(drones), ["b", "x"])
        self.assertEqual(drones["b"]["id"], created["id"])
        self.assertEqual(drones["x"]["id"], record_x["id"])


class RemoveTests(_LifecycleTestCase):
    def test_remove_is_idempotent(self) -> None:
        self.lifecycle.create(name="d1")

        first = self.lifecycle.remove("d1")
        second = self.lifecycle.remove("d1")

        self.assertTrue(first["removedRegistry"])
        self.assertFalse(second["removedRegistry"])
        self.assertTrue(second["alreadyRemoved"])
        self.assertEqual(self.store.read()["drones"], {})

    def test_remove_keep_volume_and_keep_record(self) -> None:
        self.lifecycle.create(name="d1")

        result = self.lifecycle.remove("d1", keep_volume=True, forget=False)

        self.assertFalse(result["removedRegistry"])
        self.assertIn(("rm", "d1", True), self.runtime.calls)
        self.assertIn("d1", self.store.read()["drones"])

    def test_remove_retries_then_surfaces_runtime_error_without_forgetting(self) -> None:
        self.lifecycle.create(name="d1")
        self.runtime.remove_failures = 3

        with self.assertRaises(RuntimeCommandError):
            self.lifecycle.remove("d1")

        self.assertEqual(len([call for call in self.runtime.calls if call[0] == "rm"]), 3)
        self.assertIn("d1", self.store.read()["drones"])

    def test_remove_succeeds_after_transient_failure(self) -> None:
        self.lifecycle.create(name="d1")
        self.runtime.remove_failures = 1

        self.assertTrue(self.lifecycle.remove("d1")["removedRegistry"])


class ReadThroughTests(_LifecycleTestCase):
    def test_status_promotes_starting_drone_when_daemon_healthy(self) -> None:
        self.lifecycle.create(name="d1")

        status = self.lifecycle.status("d1")

        self.assertEqual(status["phase"], "running")
        self.assertEqual(status["hostPort"], 40100)
        self.assertEqual(self.daemon.calls[0][0], 40100)
        self.assertEqual(self.store.read()["drones"]["d1"]["hubPhase"], "running")

    def test_status_keeps_phase_when_daemon_unreachable(self) -> None:
        self.daemon.payload = {"ok": False, "error": "drone daemon unreachable"}
        self.lifecycle.create(name="d1")

        status = self.lifecycle.status("d1")

        self.assertEqual(status["phase"], "starting")
        self.assertFalse(status["daemon"]["ok"])

    def test_exec_and_ports_do_not_mutate_registry(self) -> None:
        self.lifecycle.create(name="d1")
        before = self.store.read()

        result = self.lifecycle.exec("d1", cmd="echo", args=["OK"])
        _record, rows = self.lifecycle.ports("d1")

        self.assertEqual(result["exitCode"], 0)
        self.assertIn("OK", result["stdout"])
        self.assertEqual(rows, [{"hostPort": 40100, "containerPort": 7777}])
        self.assertEqual(self.store.read(), before)

    def test_exec_validates_command(self) -> None:
        self.lifecycle.create(name="d1")
        with self.assertRaises(HTTPException) as ctx:
            self.lifecycle.exec("d1", cmd="")
        self.assertEqual(ctx.exception.status_code, 400)

    def test_clear_hub_error(self) -> None:
        created = self.lifecycle.create(name="d1")
        self.lifecycle.set_phase(created["id"], "error", "seed failed")

        result = self.lifecycle.clear_hub_error("d1")

        self.assertEqual(result["phase"], "running")
        self.assertEqual(self.store.read()["drones"]["d1"]["hubMessage"], "")

    def test_parse_fs_list_output_sorts_directories_first(self) -> None:
        text = "__PATH__\t/dvm-data/home\nz.txt\tf\t12\t10\nsrc\td\t4096\t20\n.\td\t0\t0\n"

        resolved, entries = parse_fs_list_output(text)

        self.assertEqual(resolved, "/dvm-data/home")
        self.assertEqual([entry["name"] for entry in entries], ["src", "z.txt"])
        self.assertEqual(entries[1]["path"], "/dvm-data/home/z.txt")
        self.assertEqual(entries[1]["mtimeMs"], 10000)


if __name__ == "__main__":
    unittest.main()
