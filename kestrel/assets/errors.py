# kestrel/assets/errors.py
from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Sequence

if TYPE_CHECKING:
    from kestrel.assets.path import AssetPath


class ErrorKind(Enum):
    IO = "io"
    LOADER_NOT_FOUND = "loader_not_found"
    DESERIALIZE = "deserialize"
    DEPENDENCY_FAILED = "dependency_failed"
    CYCLIC_DEPENDENCY = "cyclic_dependency"
    DUPLICATE_ASSET_ID = "duplicate_asset_id"
    CANCELLED = "cancelled"
    INCORRECT_TYPE = "incorrect_type"
    MISSING_SERIALIZER = "missing_serializer"
    SERIALIZE = "serialize"
    METADATA = "metadata"


class AssetError(Exception):
    """Base class for every failure the asset core reports."""

    kind: ErrorKind

    def __init__(
        self,
        message: str,
        *,
        path: Optional[AssetPath] = None,
        asset_id: Any = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.asset_id = asset_id


class AssetIoError(AssetError):
    kind = ErrorKind.IO


class LoaderNotFoundError(AssetError):
    kind = ErrorKind.LOADER_NOT_FOUND


class DeserializeError(AssetError):
    kind = ErrorKind.DESERIALIZE


class DependencyFailedError(AssetError):
    kind = ErrorKind.DEPENDENCY_FAILED

    def __init__(
        self,
        message: str,
        *,
        failed: Sequence[AssetPath] = (),
        path: Optional[AssetPath] = None,
        asset_id: Any = None,
    ) -> None:
        super().__init__(message, path=path, asset_id=asset_id)
        self.failed = tuple(failed)


class CyclicDependencyError(AssetError):
    kind = ErrorKind.CYCLIC_DEPENDENCY

    def __init__(
        self,
        message: str,
        *,
        cycle: Sequence[Any] = (),
        path: Optional[AssetPath] = None,
        asset_id: Any = None,
    ) -> None:
        super().__init__(message, path=path, asset_id=asset_id)
        self.cycle = tuple(cycle)


class DuplicateAssetIdError(AssetError):
    kind = ErrorKind.DUPLICATE_ASSET_ID


class LoadCancelledError(AssetError):
    kind = ErrorKind.CANCELLED


class IncorrectAssetTypeError(AssetError):
    kind = ErrorKind.INCORRECT_TYPE


class MissingSerializerError(AssetError):
    kind = ErrorKind.MISSING_SERIALIZER


class SerializeError(AssetError):
    kind = ErrorKind.SERIALIZE


class MetadataWriteError(AssetError):
    kind = ErrorKind.METADATA
