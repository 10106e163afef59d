# kestrel/assets/loaders/texture.py
import io

from PIL import Image

from kestrel.assets.loaders.base import AssetLoader, LoadContext
from kestrel.assets.types import TextureData


class TextureLoader(AssetLoader):
    type_tag = "texture"
    extensions = (".png", ".jpg", ".jpeg", ".bmp", ".tga")

    def load(self, data: bytes, context: LoadContext) -> TextureData:
        with Image.open(io.BytesIO(data)) as img:
            converted = img.convert("RGBA")

            width, height = converted.size
            pixels = converted.tobytes()

        return TextureData(data=pixels, width=width, height=height, components=4)
