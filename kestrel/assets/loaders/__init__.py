# kestrel/assets/loaders/__init__.py
from kestrel.assets.loaders.base import (
    AssetLoader,
    LoadContext,
    LoadedAsset,
    LoaderRegistry,
)
from kestrel.assets.loaders.mesh import ObjLoader
from kestrel.assets.loaders.shader import ShaderLoader
from kestrel.assets.loaders.texture import TextureLoader


def default_loaders() -> list[AssetLoader]:
    return [ObjLoader(), TextureLoader(), ShaderLoader()]


__all__ = [
    "AssetLoader",
    "LoadContext",
    "LoadedAsset",
    "LoaderRegistry",
    "ObjLoader",
    "ShaderLoader",
    "TextureLoader",
    "default_loaders",
]
