from __future__ import annotations

import contextlib
import copy
import fcntl
import json
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterator

from drone_core.errors import RegistryError
from drone_hub.store.records import new_registry, normalize_registry, reindex_drones


Registry = dict[str, Any]
RegistryMutator = Callable[[Registry], Any]


class _RegistryStoreBase:
    """Single-writer read-modify-write over the registry document.

    ``update`` loads the current document, applies the mutator in place and
    persists the result. A mutator that raises aborts the update and nothing
    is written. Every update observes every previously completed update.
    """

    def __init__(self, *, lock: Lock | None = None) -> None:
        self._lock = lock or Lock()

    def read(self) -> Registry:
        with self._lock:
            return self._load_locked()

    def update(self, mutator: RegistryMutator) -> Registry:
        with self._lock:
            with self._exclusive_locked():
                registry = self._load_locked()
                mutator(registry)
                registry = normalize_registry(registry)
                reindex_drones(registry)
                self._persist_locked(registry)
                return copy.deepcopy(registry)

    @contextlib.contextmanager
    def _exclusive_locked(self) -> Iterator[None]:
        yield

    def _load_locked(self) -> Registry:
        raise NotImplementedError

    def _persist_locked(self, registry: Registry) -> None:
        raise NotImplementedError


class RegistryStore(_RegistryStoreBase):
    def __init__(
        self,
        *,
        registry_file: Path,
        lock: Lock | None = None,
        lock_timeout_seconds: float = 10.0,
        new_registry_factory: Callable[[], Registry] = new_registry,
    ) -> None:
        super().__init__(lock=lock)
        self.registry_file = Path(registry_file)
        self.lock_file = self.registry_file.with_name(f"{self.registry_file.name}.lock")
        self._lock_timeout_seconds = float(lock_timeout_seconds)
        self._new_registry_factory = new_registry_factory

    @contextlib.contextmanager
    def _exclusive_locked(self) -> Iterator[None]:
        # The CLI and the hub may share a data dir; flock keeps their writes apart.
        try:
            self.registry_file.parent.mkdir(parents=True, exist_ok=True)
            handle = self.lock_file.open("a+", encoding="utf-8")
        except OSError as exc:
            raise RegistryError(f"Unable to open registry lock file {self.lock_file}: {exc}") from exc
        try:
            deadline = time.monotonic() + self._lock_timeout_seconds
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise RegistryError(
                            f"Timed out waiting for registry lock {self.lock_file}."
                        ) from None
                    time.sleep(0.05)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def _load_locked(self) -> Registry:
        if not self.registry_file.exists():
            return self._new_registry_factory()
        try:
            loaded = json.loads(self.registry_file.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            preserved_path = self._preserve_corrupt_registry_file_locked()
            raise RegistryError(f"Registry file is corrupt JSON and was moved to {preserved_path}.") from exc
        except OSError as exc:
            raise RegistryError(f"Unable to read registry file {self.registry_file}: {exc}") from exc
        if not isinstance(loaded, dict):
            preserved_path = self._preserve_corrupt_registry_file_locked()
            raise RegistryError(f"Registry file must contain a JSON object and was moved to {preserved_path}.")
        return normalize_registry(loaded)

    def _persist_locked(self, registry: Registry) -> None:
        directory = self.registry_file.parent
        tmp_path: Path | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, raw_tmp_path = tempfile.mkstemp(prefix=f".{self.registry_file.name}.", suffix=".tmp", dir=directory)
            tmp_path = Path(raw_tmp_path)
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                json.dump(registry, fp, indent=2)
                fp.write("\n")
                fp.flush()
                os.fsync(fp.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.registry_file)
            tmp_path = None
        except OSError as exc:
            raise RegistryError(f"Failed to write registry file {self.registry_file}: {exc}") from exc
        finally:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()

    def _preserve_corrupt_registry_file_locked(self) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        base_name = f"{self.registry_file.name}.corrupt-{timestamp}"
        preserved_path = self.registry_file.with_name(base_name)
        suffix = 1
        while preserved_path.exists():
            preserved_path = self.registry_file.with_name(f"{base_name}.{suffix}")
            suffix += 1
        try:
            self.registry_file.replace(preserved_path)
        except OSError as exc:
            raise RegistryError(f"Failed to preserve corrupt registry file {self.registry_file}: {exc}") from exc
        return preserved_path


class InMemoryRegistryStore(_RegistryStoreBase):
    def __init__(self, initial: Registry | None = None, *, lock: Lock | None = None) -> None:
        super().__init__(lock=lock)
        self._registry = normalize_registry(initial) if initial is not None else new_registry()

    def _load_locked(self) -> Registry:
        return copy.deepcopy(self._registry)

    def _persist_locked(self, registry: Registry) -> None:
        self._registry = copy.deepcopy(registry)


__all__ = ["InMemoryRegistryStore", "Registry", "RegistryMutator", "RegistryStore"]
