# kestrel/assets/registry.py
import threading
from dataclasses import dataclass
from typing import Dict, Generic, List, Optional, Type, TypeVar

from kestrel.assets.errors import DuplicateAssetIdError
from kestrel.assets.handle import AssetId
from kestrel.assets.state import LoadState

T = TypeVar("T")


@dataclass(slots=True)
class AssetEntry(Generic[T]):
    """
    One stored value. ``strong_count`` is a snapshot taken at the owner's
    sync point (``AssetServer.update``), so a value committed between two
    updates reports the count from the previous one.
    """

    value: T
    state: LoadState = LoadState.LOADED
    strong_count: int = 0
    generation: int = 0
    degraded: bool = False


class Assets(Generic[T]):
    """
    Stores loaded asset data (CPU side) of one type mapped by AssetId.

    Removal is reserved for the server's drop-queue processing; holders of
    handles never remove entries directly.
    """

    def __init__(self, asset_type: Type[T]) -> None:
        self.asset_type = asset_type
        self._storage: Dict[AssetId, AssetEntry[T]] = {}
        self._lock = threading.RLock()

    def insert(self, asset_id: AssetId, value: T, *, degraded: bool = False) -> None:
        """Register a loaded asset."""
        with self._lock:
            if asset_id in self._storage:
                raise DuplicateAssetIdError(
                    f"{self.asset_type.__name__} {asset_id} is already stored",
                    asset_id=asset_id,
                )
            self._storage[asset_id] = AssetEntry(value=value, degraded=degraded)

    def replace(self, asset_id: AssetId, value: T, *, degraded: bool = False) -> int:
        """Swap the value in place and return the new generation."""
        with self._lock:
            entry = self._storage.get(asset_id)
            if entry is None:
                raise KeyError(f"{self.asset_type.__name__} {asset_id} not stored")
            entry.value = value
            entry.state = LoadState.LOADED
            entry.degraded = degraded
            entry.generation += 1
            return entry.generation

    def get(self, asset_id: AssetId) -> Optional[T]:
        """Retrieve asset data if available."""
        with self._lock:
            entry = self._storage.get(asset_id)
            return entry.value if entry is not None else None

    def get_mut(self, asset_id: AssetId) -> Optional[AssetEntry[T]]:
        """The live entry; mutate only while no reload touches it."""
        with self._lock:
            return self._storage.get(asset_id)

    def entry(self, asset_id: AssetId) -> Optional[AssetEntry[T]]:
        """Snapshot of the entry, safe to hold on to."""
        with self._lock:
            entry = self._storage.get(asset_id)
            if entry is None:
                return None
            return AssetEntry(
                value=entry.value,
                state=entry.state,
                strong_count=entry.strong_count,
                generation=entry.generation,
                degraded=entry.degraded,
            )

    def set_state(self, asset_id: AssetId, state: LoadState) -> None:
        with self._lock:
            entry = self._storage.get(asset_id)
            if entry is not None:
                entry.state = state

    def set_strong_count(self, asset_id: AssetId, count: int) -> None:
        with self._lock:
            entry = self._storage.get(asset_id)
            if entry is not None:
                entry.strong_count = count

    def remove(self, asset_id: AssetId) -> Optional[T]:
        with self._lock:
            entry = self._storage.pop(asset_id, None)
            return entry.value if entry is not None else None

    def ids(self) -> List[AssetId]:
        with self._lock:
            return list(self._storage)

    def __contains__(self, asset_id: object) -> bool:
        with self._lock:
            return asset_id in self._storage

    def __len__(self) -> int:
        with self._lock:
            return len(self._storage)

    def clear(self) -> None:
        """Clear all loaded assets (use with caution)."""
        with self._lock:
            self._storage.clear()
