# kestrel/assets/__init__.py
from kestrel.assets.derive import AssetDerivation, TextureFlipDerivation
from kestrel.assets.errors import (
    AssetError,
    AssetIoError,
    CyclicDependencyError,
    DependencyFailedError,
    DeserializeError,
    DuplicateAssetIdError,
    ErrorKind,
    IncorrectAssetTypeError,
    LoadCancelledError,
    LoaderNotFoundError,
    MetadataWriteError,
    MissingSerializerError,
    SerializeError,
)
from kestrel.assets.events import AssetEvent, AssetEventKind, AssetLoadFailed
from kestrel.assets.graph import DependencyEdge, DependencyGraph
from kestrel.assets.handle import AssetId, Handle, HandleKind
from kestrel.assets.io import FileAssetIO, MemoryAssetIO, SourceIO
from kestrel.assets.loaders import AssetLoader, LoadContext, LoadedAsset
from kestrel.assets.meta import AssetSourceMeta, MetadataStore
from kestrel.assets.path import DEFAULT_SOURCE, AssetPath, SourceId
from kestrel.assets.registry import AssetEntry, Assets
from kestrel.assets.serializers import AssetSerializer
from kestrel.assets.server import AssetServer
from kestrel.assets.settings import AssetServerSettings
from kestrel.assets.state import LoadState
from kestrel.assets.types import (
    MeshData,
    ShaderSource,
    TextureData,
    VertexLayout,
)

__all__ = [
    "AssetServer",
    "AssetServerSettings",
    "Handle",
    "HandleKind",
    "AssetId",
    "AssetPath",
    "SourceId",
    "DEFAULT_SOURCE",
    "Assets",
    "AssetEntry",
    "LoadState",
    "DependencyEdge",
    "DependencyGraph",
    "SourceIO",
    "FileAssetIO",
    "MemoryAssetIO",
    "AssetLoader",
    "LoadContext",
    "LoadedAsset",
    "AssetSerializer",
    "AssetDerivation",
    "TextureFlipDerivation",
    "AssetSourceMeta",
    "MetadataStore",
    "AssetEvent",
    "AssetEventKind",
    "AssetLoadFailed",
    "ErrorKind",
    "AssetError",
    "AssetIoError",
    "LoaderNotFoundError",
    "DeserializeError",
    "DependencyFailedError",
    "CyclicDependencyError",
    "DuplicateAssetIdError",
    "LoadCancelledError",
    "IncorrectAssetTypeError",
    "MissingSerializerError",
    "SerializeError",
    "MetadataWriteError",
    "MeshData",
    "TextureData",
    "ShaderSource",
    "VertexLayout",
]
