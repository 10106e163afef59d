# kestrel/assets/loaders/shader.py
import re

from kestrel.assets.loaders.base import AssetLoader, LoadContext, LoadedAsset
from kestrel.assets.types import ShaderSource

_INCLUDE = re.compile(r'^\s*#\s*include\s+[<"]([^>"]+)[>"]', re.MULTILINE)


class ShaderLoader(AssetLoader):
    """GLSL text; every ``#include "file"`` becomes a dependency."""

    type_tag = "shader"
    extensions = (".glsl", ".frag", ".vert", ".comp")

    def load(self, data: bytes, context: LoadContext) -> LoadedAsset:
        source = data.decode("utf-8")

        includes = [context.resolve(ref) for ref in _INCLUDE.findall(source)]
        shader = ShaderSource(
            source=source,
            path=str(context.path),
            includes=tuple(str(p) for p in includes),
        )
        return LoadedAsset(shader).with_dependencies(includes)
