# kestrel/assets/handle.py
from __future__ import annotations

import hashlib
import threading
import uuid
from dataclasses import dataclass
from enum import Enum, auto
from queue import Empty, SimpleQueue
from typing import Dict, Generic, Optional, Set, Tuple, Type, TypeVar

from kestrel.assets.errors import DuplicateAssetIdError
from kestrel.assets.path import AssetPath

T = TypeVar("T")  # Type of data (MeshData, TextureData)

_INDEX_SPACE = 10**16


@dataclass(frozen=True, slots=True, order=True)
class AssetId:
    """
    Identifies one incarnation of an asset.

    ``index`` is stable for a path across runs; ``epoch`` is bumped each time
    the index is freed, so stale ids never alias a later asset.
    """

    index: int
    epoch: int = 0

    @staticmethod
    def index_for_path(path: AssetPath) -> int:
        digest = hashlib.sha256(str(path).encode()).hexdigest()
        return int(digest, 16) % _INDEX_SPACE

    @staticmethod
    def random_index() -> int:
        return uuid.uuid4().int % _INDEX_SPACE

    def __str__(self) -> str:
        return f"{self.index:016d}v{self.epoch}"


class HandleKind(Enum):
    STRONG = auto()
    WEAK = auto()


class RefChange(Enum):
    INCREMENT = auto()
    DECREMENT = auto()


class RefCounter:
    """
    Strong reference bookkeeping.

    Handles only push changes onto a queue, which is safe from finalizers and
    any thread. Counts are folded in by ``drain`` at the owner's sync point.
    """

    def __init__(self) -> None:
        self._changes: SimpleQueue[Tuple[RefChange, AssetId]] = SimpleQueue()
        self._counts: Dict[AssetId, int] = {}
        self._lock = threading.Lock()

    def increment(self, asset_id: AssetId) -> None:
        self._changes.put((RefChange.INCREMENT, asset_id))

    def decrement(self, asset_id: AssetId) -> None:
        self._changes.put((RefChange.DECREMENT, asset_id))

    def drain(self) -> Dict[AssetId, int]:
        """
        Apply queued changes; return the new count of every id touched.
        Ids reported at zero are forgotten.
        """
        touched: Dict[AssetId, int] = {}
        with self._lock:
            while True:
                try:
                    change, asset_id = self._changes.get_nowait()
                except Empty:
                    break

                count = self._counts.get(asset_id, 0)
                if change is RefChange.INCREMENT:
                    count += 1
                else:
                    count -= 1
                if count < 0:
                    raise RuntimeError(f"Strong count underflow for {asset_id}")
                self._counts[asset_id] = count
                touched[asset_id] = count

            for asset_id, count in touched.items():
                if count == 0:
                    del self._counts[asset_id]
        return touched

    def count(self, asset_id: AssetId) -> int:
        """Count as of the last drain."""
        with self._lock:
            return self._counts.get(asset_id, 0)

    def pending(self) -> bool:
        return not self._changes.empty()


class IdAllocator:
    """Hands out AssetIds and tracks the epoch of every pooled index."""

    def __init__(self) -> None:
        self._epochs: Dict[int, int] = {}
        self._live: Set[AssetId] = set()
        self._lock = threading.Lock()

    def allocate(self, index: Optional[int] = None) -> AssetId:
        with self._lock:
            if index is None:
                index = AssetId.random_index()
                while AssetId(index, self._epochs.get(index, 0)) in self._live:
                    index = AssetId.random_index()

            asset_id = AssetId(index, self._epochs.get(index, 0))
            if asset_id in self._live:
                raise DuplicateAssetIdError(
                    f"Asset id {asset_id} is already live", asset_id=asset_id
                )
            self._live.add(asset_id)
            return asset_id

    def claim(self, asset_id: AssetId) -> None:
        """Mark a caller-supplied id live."""
        with self._lock:
            if asset_id in self._live:
                raise DuplicateAssetIdError(
                    f"Asset id {asset_id} is already live", asset_id=asset_id
                )
            if asset_id.epoch < self._epochs.get(asset_id.index, 0):
                raise DuplicateAssetIdError(
                    f"Asset id {asset_id} belongs to a retired epoch",
                    asset_id=asset_id,
                )
            self._epochs[asset_id.index] = asset_id.epoch
            self._live.add(asset_id)

    def retire(self, asset_id: AssetId) -> None:
        with self._lock:
            self._live.discard(asset_id)
            current = self._epochs.get(asset_id.index, 0)
            self._epochs[asset_id.index] = max(current, asset_id.epoch + 1)

    def is_live(self, asset_id: AssetId) -> bool:
        with self._lock:
            return asset_id in self._live


class Handle(Generic[T]):
    """
    Lightweight reference to an asset.
    Holding this does not guarantee that the asset is loaded.

    Strong handles keep the asset alive until dropped; weak handles only
    observe it. Neither holds the value, resolve it through the server.
    """

    __slots__ = ("id", "kind", "asset_type", "_counter", "_dropped", "__weakref__")

    def __init__(
        self,
        asset_id: AssetId,
        kind: HandleKind,
        asset_type: Optional[Type[T]] = None,
        counter: Optional[RefCounter] = None,
    ) -> None:
        if kind is HandleKind.STRONG and counter is None:
            raise ValueError("Strong handles need a RefCounter")
        self.id = asset_id
        self.kind = kind
        self.asset_type = asset_type
        self._counter = counter if kind is HandleKind.STRONG else None
        self._dropped = False

    @classmethod
    def strong(
        cls,
        asset_id: AssetId,
        counter: RefCounter,
        asset_type: Optional[Type[T]] = None,
    ) -> Handle[T]:
        counter.increment(asset_id)
        return cls(asset_id, HandleKind.STRONG, asset_type, counter)

    @classmethod
    def weak(
        cls, asset_id: AssetId, asset_type: Optional[Type[T]] = None
    ) -> Handle[T]:
        return cls(asset_id, HandleKind.WEAK, asset_type)

    @property
    def is_strong(self) -> bool:
        return self.kind is HandleKind.STRONG

    @property
    def is_weak(self) -> bool:
        return self.kind is HandleKind.WEAK

    @property
    def is_dropped(self) -> bool:
        return self._dropped

    def clone(self) -> Handle[T]:
        if self._dropped:
            raise ValueError(f"Cannot clone dropped handle {self!r}")
        if self._counter is not None:
            return Handle.strong(self.id, self._counter, self.asset_type)
        return Handle.weak(self.id, self.asset_type)

    def downgrade(self) -> Handle[T]:
        return Handle.weak(self.id, self.asset_type)

    def typed(self, asset_type: Type[T]) -> Handle[T]:
        """
        Move this handle's ownership into a handle of the given type.
        The original handle is spent and must not be used afterwards.
        """
        if self._dropped:
            raise ValueError(f"Cannot convert dropped handle {self!r}")
        converted: Handle[T] = Handle(self.id, self.kind, asset_type, self._counter)
        self._dropped = True
        return converted

    def drop(self) -> None:
        """Release this handle's strong reference; no-op for weak handles."""
        if self._dropped:
            return
        self._dropped = True
        if self._counter is not None:
            self._counter.decrement(self.id)

    def __enter__(self) -> Handle[T]:
        return self

    def __exit__(self, *exc_info) -> None:
        self.drop()

    def __del__(self) -> None:
        if not getattr(self, "_dropped", True):
            self.drop()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Handle):
            return NotImplemented
        return self.id == other.id and self.kind is other.kind

    def __hash__(self) -> int:
        return hash((self.id, self.kind))

    def __repr__(self) -> str:
        type_name = self.asset_type.__name__ if self.asset_type else "?"
        return f"Handle<{type_name}>({self.id}, {self.kind.name.lower()})"
