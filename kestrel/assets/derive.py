# kestrel/assets/derive.py
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, Type

from PIL import Image

from kestrel.assets.path import AssetPath
from kestrel.assets.types import TextureData


class AssetDerivation(ABC):
    """
    Turns a freshly loaded value into the artifact consumers should see,
    e.g. a GPU-friendly layout. Runs on loader threads; must be thread-safe.
    """

    source_type: Type[Any] = object

    @abstractmethod
    def derive(self, value: Any, path: AssetPath) -> Any: ...


class TextureFlipDerivation(AssetDerivation):
    """Flip textures bottom-up to match OpenGL's texture origin."""

    source_type = TextureData

    _modes = {1: "L", 2: "LA", 3: "RGB", 4: "RGBA"}

    def derive(self, value: TextureData, path: AssetPath) -> TextureData:
        mode = self._modes[value.components]
        img = Image.frombytes(mode, (value.width, value.height), value.data)
        flipped = img.transpose(Image.Transpose.FLIP_TOP_BOTTOM)
        return TextureData(
            data=flipped.tobytes(),
            width=value.width,
            height=value.height,
            components=value.components,
        )


class DerivationRegistry:
    def __init__(self) -> None:
        self._by_type: Dict[type, AssetDerivation] = {}
        self._lock = threading.Lock()

    def register(self, derivation: AssetDerivation) -> None:
        with self._lock:
            self._by_type[derivation.source_type] = derivation

    def find(self, asset_type: type) -> Optional[AssetDerivation]:
        with self._lock:
            return self._by_type.get(asset_type)

    def apply(self, value: Any, path: AssetPath) -> Tuple[Any, bool]:
        """Return the derived value, or the value unchanged when none applies."""
        derivation = self.find(type(value))
        if derivation is None:
            return value, False
        return derivation.derive(value, path), True
