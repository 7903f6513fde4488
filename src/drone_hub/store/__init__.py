from __future__ import annotations

from drone_hub.store.registry_store import InMemoryRegistryStore, Registry, RegistryMutator, RegistryStore

__all__ = ["InMemoryRegistryStore", "Registry", "RegistryMutator", "RegistryStore"]
