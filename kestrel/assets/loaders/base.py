# kestrel/assets/loaders/base.py
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
)

from kestrel.assets.errors import (
    DeserializeError,
    DuplicateAssetIdError,
    LoaderNotFoundError,
)
from kestrel.assets.path import AssetPath

if TYPE_CHECKING:
    from kestrel.assets.handle import Handle

Requester = Callable[[AssetPath], "Handle[Any]"]
Reader = Callable[[AssetPath], bytes]


@dataclass
class LoadedAsset:
    """A value produced by a loader plus the paths it depends on."""

    value: Any
    dependencies: List[AssetPath] = field(default_factory=list)
    optional: Set[AssetPath] = field(default_factory=set)

    def with_dependency(self, path: AssetPath, required: bool = True) -> LoadedAsset:
        if path not in self.dependencies:
            self.dependencies.append(path)
        if not required:
            self.optional.add(path)
        return self

    def with_dependencies(self, paths: List[AssetPath]) -> LoadedAsset:
        for path in paths:
            self.with_dependency(path)
        return self

    def is_required(self, path: AssetPath) -> bool:
        return path not in self.optional


class LoadContext:
    """
    Everything a loader may touch while parsing one source: the path being
    loaded, byte access for side files, and nested load requests.
    """

    def __init__(
        self,
        path: AssetPath,
        reader: Reader,
        requester: Optional[Requester] = None,
    ) -> None:
        self.path = path
        self._reader = reader
        self._requester = requester
        self.labeled_assets: Dict[Optional[str], LoadedAsset] = {}
        self._nested: List[Tuple[AssetPath, bool]] = []

    def resolve(self, reference: str | AssetPath) -> AssetPath:
        return self.path.resolve(reference)

    def read_asset_bytes(self, reference: str | AssetPath) -> bytes:
        return self._reader(self.resolve(reference))

    def load(self, reference: str | AssetPath, required: bool = True) -> Optional[Handle[Any]]:
        """
        Request a nested load and record it as a dependency of what this
        source produces. Returns None when no server is attached.
        """
        dependency = self.resolve(reference)
        self.add_dependency(dependency, required)
        if self._requester is None:
            return None
        return self._requester(dependency)

    def add_dependency(self, reference: str | AssetPath, required: bool = True) -> None:
        self._nested.append((self.resolve(reference), required))

    def has_labeled_asset(self, label: str) -> bool:
        return label in self.labeled_assets

    def set_default_asset(self, asset: LoadedAsset | Any) -> None:
        self._put(None, asset)

    def set_labeled_asset(self, label: str, asset: LoadedAsset | Any) -> None:
        if not label:
            raise ValueError("Sub-asset labels must not be empty")
        self._put(label, asset)

    def _put(self, label: Optional[str], asset: LoadedAsset | Any) -> None:
        if label in self.labeled_assets:
            name = label or "default asset"
            raise DuplicateAssetIdError(
                f"{self.path} produced {name} twice", path=self.path.with_label(label)
            )
        if not isinstance(asset, LoadedAsset):
            asset = LoadedAsset(asset)
        self.labeled_assets[label] = asset

    def finish(self, result: Any) -> Dict[Optional[str], LoadedAsset]:
        """Fold the loader's return value and nested requests into the output."""
        if result is not None:
            self.set_default_asset(result)
        if not self.labeled_assets:
            raise DeserializeError(f"Loader produced no assets for {self.path}", path=self.path)

        owner = self.labeled_assets.get(None)
        owners = [owner] if owner is not None else list(self.labeled_assets.values())
        for dependency, required in self._nested:
            for loaded in owners:
                loaded.with_dependency(dependency, required)
        return self.labeled_assets


class AssetLoader(ABC):
    """Parses the bytes of one source into asset values."""

    type_tag: str = ""
    extensions: Tuple[str, ...] = ()

    def matches(self, extension: str) -> bool:
        extension = extension.lower()
        if not extension.startswith("."):
            extension = "." + extension
        return extension in self.extensions

    @abstractmethod
    def load(self, data: bytes, context: LoadContext) -> Any:
        """
        Parse ``data``. Return a value or LoadedAsset for the default asset,
        or None after calling ``context.set_labeled_asset``.
        Must be thread-safe.
        """


class LoaderRegistry:
    """Maps extensions and type tags to loaders; the last registration wins."""

    def __init__(self) -> None:
        self._by_extension: Dict[str, AssetLoader] = {}
        self._by_tag: Dict[str, AssetLoader] = {}
        self._lock = threading.Lock()

    def register(self, loader: AssetLoader) -> None:
        if not loader.extensions:
            raise ValueError(f"{type(loader).__name__} declares no extensions")
        tag = loader.type_tag or type(loader).__name__
        with self._lock:
            for extension in loader.extensions:
                self._by_extension[extension.lower()] = loader
            self._by_tag[tag] = loader

    def for_extension(self, extension: str) -> AssetLoader:
        with self._lock:
            loader = self._by_extension.get(extension.lower())
        if loader is None:
            raise LoaderNotFoundError(f"No loader for extension '{extension}'")
        return loader

    def for_path(self, path: AssetPath) -> AssetLoader:
        try:
            return self.for_extension(path.extension)
        except LoaderNotFoundError as e:
            raise LoaderNotFoundError(str(e), path=path) from None

    def for_tag(self, tag: str) -> AssetLoader:
        with self._lock:
            loader = self._by_tag.get(tag)
        if loader is None:
            raise LoaderNotFoundError(f"No loader with type tag '{tag}'")
        return loader

    def has_loader_for(self, path: AssetPath) -> bool:
        with self._lock:
            return path.extension in self._by_extension

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_tag)
