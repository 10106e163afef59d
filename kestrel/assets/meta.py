# kestrel/assets/meta.py
"""
Per-source metadata: what a source produced the last time it was imported,
and the fingerprint of the bytes it was imported from.

Records live next to the source as ``<path>.meta`` (JSON) in the metadata
IO. A record is only written after an import succeeded, and the write goes
through ``SourceIO.write`` which replaces the file atomically, so a failed
or interrupted import leaves the previous record intact.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from kestrel.assets.derive import DerivationRegistry
from kestrel.assets.errors import (
    AssetError,
    AssetIoError,
    DeserializeError,
    MetadataWriteError,
)
from kestrel.assets.handle import AssetId
from kestrel.assets.io import SourceIO
from kestrel.assets.loaders.base import (
    LoadContext,
    LoadedAsset,
    LoaderRegistry,
    Requester,
)
from kestrel.assets.path import DEFAULT_SOURCE, AssetPath
from kestrel.assets.serializers import SerializerRegistry

logger = logging.getLogger(__name__)

META_EXTENSION = ".meta"
META_VERSION = 1


def fingerprint(data: bytes) -> str:
    """Content hash of source bytes."""
    return hashlib.sha256(data).hexdigest()


def meta_path(path: AssetPath) -> str:
    """``textures/a.png`` -> ``textures/a.png.meta``; other sources get a prefix."""
    relative = path.path + META_EXTENSION
    if path.source != DEFAULT_SOURCE:
        return f"{path.source}/{relative}"
    return relative


def imported_asset_name(path: AssetPath, type_name: str, serializer_tag: str, extension: str) -> str:
    hasher = hashlib.sha256()
    for part in (str(path), type_name, serializer_tag):
        hasher.update(part.encode())
        hasher.update(b"\0")
    return f"{hasher.hexdigest()[:16]}.{extension}"


@dataclass(frozen=True)
class ProducedAsset:
    label: Optional[str]
    asset_index: int
    type_name: str
    dependencies: Tuple[str, ...] = ()
    optional: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "asset_id": self.asset_index,
            "type": self.type_name,
            "dependencies": list(self.dependencies),
            "optional": list(self.optional),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProducedAsset:
        return cls(
            label=data.get("label"),
            asset_index=int(data["asset_id"]),
            type_name=data.get("type", ""),
            dependencies=tuple(data.get("dependencies", ())),
            optional=tuple(data.get("optional", ())),
        )


@dataclass(frozen=True)
class DerivedArtifact:
    label: Optional[str]
    artifact_path: Optional[str]
    serializer: Optional[str]
    source_fingerprint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "artifact": self.artifact_path,
            "serializer": self.serializer,
            "source_fingerprint": self.source_fingerprint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DerivedArtifact:
        return cls(
            label=data.get("label"),
            artifact_path=data.get("artifact"),
            serializer=data.get("serializer"),
            source_fingerprint=data["source_fingerprint"],
        )


@dataclass(frozen=True)
class AssetSourceMeta:
    fingerprint: str
    loader: str
    produced: Tuple[ProducedAsset, ...] = ()
    derived: Tuple[DerivedArtifact, ...] = ()

    @property
    def asset_indices(self) -> List[int]:
        return [p.asset_index for p in self.produced]

    def dependencies_of(self, label: Optional[str]) -> Tuple[str, ...]:
        for produced in self.produced:
            if produced.label == label:
                return produced.dependencies
        return ()

    def to_json(self) -> bytes:
        payload = {
            "version": META_VERSION,
            "fingerprint": self.fingerprint,
            "loader": self.loader,
            "produced": [p.to_dict() for p in self.produced],
            "derived": [d.to_dict() for d in self.derived],
        }
        return json.dumps(payload, indent=2, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, data: bytes) -> AssetSourceMeta:
        payload = json.loads(data.decode("utf-8"))
        return cls(
            fingerprint=payload["fingerprint"],
            loader=payload.get("loader", ""),
            produced=tuple(ProducedAsset.from_dict(p) for p in payload.get("produced", ())),
            derived=tuple(DerivedArtifact.from_dict(d) for d in payload.get("derived", ())),
        )


@dataclass
class ImportResult:
    meta: AssetSourceMeta
    assets: Dict[Optional[str], LoadedAsset] = field(default_factory=dict)


class MetadataStore:
    """
    Import and change detection for sources.

    ``get_or_import`` only runs the loader when no record exists or the
    source fingerprint moved; otherwise the stored record is returned as is.
    """

    def __init__(
        self,
        read_source: Callable[[AssetPath], bytes],
        loaders: LoaderRegistry,
        *,
        derivations: Optional[DerivationRegistry] = None,
        serializers: Optional[SerializerRegistry] = None,
        meta_io: Optional[SourceIO] = None,
        import_io: Optional[SourceIO] = None,
    ) -> None:
        self._read_source = read_source
        self._loaders = loaders
        self._derivations = derivations or DerivationRegistry()
        self._serializers = serializers or SerializerRegistry()
        self._meta_io = meta_io
        self._import_io = import_io
        self._cache: Dict[AssetPath, AssetSourceMeta] = {}
        self._lock = threading.Lock()

    @property
    def persistent(self) -> bool:
        return self._meta_io is not None

    def get(self, path: AssetPath) -> Optional[AssetSourceMeta]:
        source = path.without_label()
        with self._lock:
            cached = self._cache.get(source)
        if cached is not None or self._meta_io is None:
            return cached

        location = meta_path(source)
        if not self._meta_io.exists(location):
            return None
        try:
            meta = AssetSourceMeta.from_json(self._meta_io.read(location))
        except AssetIoError as e:
            logger.warning("Could not read metadata %s: %s", location, e)
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Ignoring malformed metadata %s: %s", location, e)
            return None

        with self._lock:
            self._cache.setdefault(source, meta)
        return meta

    def store(self, path: AssetPath, meta: AssetSourceMeta) -> None:
        source = path.without_label()
        if self._meta_io is not None:
            try:
                self._meta_io.write(meta_path(source), meta.to_json())
            except AssetIoError as e:
                raise MetadataWriteError(
                    f"Could not persist metadata for {source}: {e}", path=source
                ) from e
        with self._lock:
            self._cache[source] = meta

    def forget(self, path: AssetPath) -> None:
        with self._lock:
            self._cache.pop(path.without_label(), None)

    def is_current(self, path: AssetPath, source_fingerprint: str) -> bool:
        meta = self.get(path)
        return meta is not None and meta.fingerprint == source_fingerprint

    def get_or_import(
        self, path: AssetPath, requester: Optional[Requester] = None
    ) -> AssetSourceMeta:
        source = path.without_label()
        data = self._read_source(source)
        meta = self.get(source)
        if meta is not None and meta.fingerprint == fingerprint(data):
            logger.debug("Metadata for %s is current", source)
            return meta

        result = self.import_source(source, data, requester)
        self.store(source, result.meta)
        return result.meta

    def import_source(
        self,
        path: AssetPath,
        data: bytes,
        requester: Optional[Requester] = None,
    ) -> ImportResult:
        """
        Run the loader and derivations over ``data``. Nothing is persisted;
        the caller stores ``result.meta`` once the import is committed.
        """
        source = path.without_label()
        loader = self._loaders.for_path(source)
        context = LoadContext(source, self._read_source, requester)
        try:
            assets = context.finish(loader.load(data, context))
        except AssetError:
            raise
        except Exception as e:
            raise DeserializeError(
                f"{type(loader).__name__} failed on {source}: {e}", path=source
            ) from e

        source_fingerprint = fingerprint(data)
        produced: List[ProducedAsset] = []
        derived: List[DerivedArtifact] = []
        for label, loaded in assets.items():
            labeled = source.with_label(label)
            try:
                value, was_derived = self._derivations.apply(loaded.value, labeled)
            except Exception as e:
                raise DeserializeError(f"Derivation failed on {labeled}: {e}", path=labeled) from e
            loaded.value = value

            if was_derived:
                derived.append(self._write_artifact(labeled, value, source_fingerprint))

            produced.append(
                ProducedAsset(
                    label=label,
                    asset_index=AssetId.index_for_path(labeled),
                    type_name=type(value).__name__,
                    dependencies=tuple(str(d) for d in loaded.dependencies),
                    optional=tuple(str(d) for d in loaded.dependencies if not loaded.is_required(d)),
                )
            )

        meta = AssetSourceMeta(
            fingerprint=source_fingerprint,
            loader=loader.type_tag or type(loader).__name__,
            produced=tuple(produced),
            derived=tuple(derived),
        )
        return ImportResult(meta=meta, assets=assets)

    def load_imported(self, path: AssetPath, data: bytes) -> Optional[ImportResult]:
        """
        Rebuild the assets of an unchanged source from its derived artifacts.

        Returns None unless the record matches ``data`` and every produced
        asset has a readable artifact, in which case the loader is skipped.
        """
        if self._import_io is None:
            return None
        source = path.without_label()
        meta = self.get(source)
        if meta is None or not meta.produced:
            return None
        if meta.fingerprint != fingerprint(data):
            return None

        artifacts = {d.label: d for d in meta.derived}
        assets: Dict[Optional[str], LoadedAsset] = {}
        for produced in meta.produced:
            artifact = artifacts.get(produced.label)
            if artifact is None or artifact.artifact_path is None or artifact.serializer is None:
                return None
            try:
                serializer = self._serializers.for_tag(artifact.serializer)
                value = serializer.deserialize(self._import_io.read(artifact.artifact_path))
            except (AssetError, ValueError) as e:
                logger.debug("Artifact for %s unusable, re-importing: %s", source, e)
                return None

            loaded = LoadedAsset(value)
            optional = set(produced.optional)
            for dependency in produced.dependencies:
                loaded.with_dependency(AssetPath.parse(dependency), dependency not in optional)
            assets[produced.label] = loaded

        logger.debug("Reusing imported artifacts for %s", source)
        return ImportResult(meta=meta, assets=assets)

    def _write_artifact(self, path: AssetPath, value: Any, source_fingerprint: str) -> DerivedArtifact:
        serializer = self._serializers.find(type(value))
        if self._import_io is None or serializer is None:
            return DerivedArtifact(path.label, None, None, source_fingerprint)

        name = imported_asset_name(path, type(value).__name__, serializer.type_tag, serializer.extension)
        try:
            self._import_io.write(name, serializer.serialize(value))
        except AssetIoError as e:
            logger.warning("Could not write derived artifact for %s: %s", path, e)
            return DerivedArtifact(path.label, None, serializer.type_tag, source_fingerprint)

        logger.debug("Wrote derived artifact %s for %s", name, path)
        return DerivedArtifact(path.label, name, serializer.type_tag, source_fingerprint)
