# kestrel/assets/serializers.py
import struct
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Optional, Type, TypeVar

from kestrel.assets.errors import DeserializeError, MissingSerializerError
from kestrel.assets.types import MeshData, ShaderSource, TextureData, VertexLayout

T = TypeVar("T")


class AssetSerializer(ABC, Generic[T]):
    """Turns values of ``asset_type`` into bytes and back."""

    type_tag: str = ""
    asset_type: Type[Any] = object
    extension: str = "bin"

    @abstractmethod
    def serialize(self, value: T) -> bytes: ...

    @abstractmethod
    def deserialize(self, data: bytes) -> T: ...


class ShaderSerializer(AssetSerializer[ShaderSource]):
    type_tag = "kestrel.shader"
    asset_type = ShaderSource
    extension = "glsl"

    def serialize(self, value: ShaderSource) -> bytes:
        return value.source.encode("utf-8")

    def deserialize(self, data: bytes) -> ShaderSource:
        return ShaderSource(source=data.decode("utf-8"), path="")


class TextureSerializer(AssetSerializer[TextureData]):
    """
    Format: [magic "KTEX"] [width u32] [height u32] [components u8] [pixels]
    """

    type_tag = "kestrel.texture"
    asset_type = TextureData
    extension = "ktex"

    _header = struct.Struct("<4sIIB")

    def serialize(self, value: TextureData) -> bytes:
        header = self._header.pack(b"KTEX", value.width, value.height, value.components)
        return header + value.data

    def deserialize(self, data: bytes) -> TextureData:
        if len(data) < self._header.size:
            raise DeserializeError("Texture blob shorter than its header")
        magic, width, height, components = self._header.unpack_from(data)
        if magic != b"KTEX":
            raise DeserializeError(f"Bad texture magic {magic!r}")

        pixels = data[self._header.size:]
        if len(pixels) != width * height * components:
            raise DeserializeError("Texture blob size does not match its header")
        return TextureData(data=pixels, width=width, height=height, components=components)


class MeshSerializer(AssetSerializer[MeshData]):
    """
    Format: [magic "KMSH"] [stride u32] [vertex bytes u32] [index bytes u32]
    [index count u32] [aabb 6f] [layout format len u16] [layout format]
    [attributes len u16] [attributes, comma separated] [vertices] [indices]
    """

    type_tag = "kestrel.mesh"
    asset_type = MeshData
    extension = "kmsh"

    _header = struct.Struct("<4sIIII6f")
    _length = struct.Struct("<H")

    def serialize(self, value: MeshData) -> bytes:
        layout = value.vertex_layout
        indices = value.indices or b""
        (x0, y0, z0), (x1, y1, z1) = value.aabb

        fmt = layout.format.encode("ascii")
        attributes = ",".join(layout.attributes).encode("ascii")
        parts = [
            self._header.pack(
                b"KMSH",
                layout.stride_bytes,
                len(value.vertices),
                len(indices),
                value.index_count,
                x0, y0, z0, x1, y1, z1,
            ),
            self._length.pack(len(fmt)),
            fmt,
            self._length.pack(len(attributes)),
            attributes,
            value.vertices,
            indices,
        ]
        return b"".join(parts)

    def deserialize(self, data: bytes) -> MeshData:
        try:
            (magic, stride, n_vertex, n_index, index_count, *box) = self._header.unpack_from(data)
            if magic != b"KMSH":
                raise DeserializeError(f"Bad mesh magic {magic!r}")

            offset = self._header.size
            (fmt_len,) = self._length.unpack_from(data, offset)
            offset += self._length.size
            fmt = data[offset:offset + fmt_len].decode("ascii")
            offset += fmt_len
            (attr_len,) = self._length.unpack_from(data, offset)
            offset += self._length.size
            attributes = data[offset:offset + attr_len].decode("ascii")
            offset += attr_len
        except struct.error as e:
            raise DeserializeError(f"Truncated mesh blob: {e}") from e

        vertices = data[offset:offset + n_vertex]
        indices = data[offset + n_vertex:offset + n_vertex + n_index]
        if len(vertices) != n_vertex or len(indices) != n_index:
            raise DeserializeError("Mesh blob shorter than its header declares")

        return MeshData(
            vertices=vertices,
            vertex_layout=VertexLayout(
                attributes=attributes.split(",") if attributes else [],
                format=fmt,
                stride_bytes=stride,
            ),
            aabb=(tuple(box[:3]), tuple(box[3:])),  # type: ignore[arg-type]
            indices=indices or None,
            index_count=index_count,
        )


class SerializerRegistry:
    """Serializers keyed by their stable type tag and by the value type."""

    def __init__(self) -> None:
        self._by_tag: Dict[str, AssetSerializer] = {}
        self._by_type: Dict[type, str] = {}
        self._lock = threading.Lock()

    def register(self, serializer: AssetSerializer) -> None:
        if not serializer.type_tag:
            raise ValueError(f"{type(serializer).__name__} has no type tag")
        with self._lock:
            self._by_tag[serializer.type_tag] = serializer
            self._by_type[serializer.asset_type] = serializer.type_tag

    def for_tag(self, tag: str) -> AssetSerializer:
        with self._lock:
            serializer = self._by_tag.get(tag)
        if serializer is None:
            raise MissingSerializerError(f"No serializer with type tag '{tag}'")
        return serializer

    def for_type(self, asset_type: type) -> AssetSerializer:
        found = self.find(asset_type)
        if found is None:
            raise MissingSerializerError(f"No serializer for {asset_type.__name__}")
        return found

    def find(self, asset_type: type) -> Optional[AssetSerializer]:
        with self._lock:
            tag = self._by_type.get(asset_type)
            return self._by_tag.get(tag) if tag is not None else None


def default_serializers() -> list:
    return [ShaderSerializer(), TextureSerializer(), MeshSerializer()]
