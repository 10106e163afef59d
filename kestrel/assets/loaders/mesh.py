# kestrel/assets/loaders/mesh.py
import struct
from typing import Dict, List, Optional, Tuple

from kestrel.assets.loaders.base import AssetLoader, LoadContext
from kestrel.assets.types import MeshData, VertexLayout

Vec3 = Tuple[float, float, float]

_VERTEX = struct.Struct("<3f 3f 2f")

LAYOUT = VertexLayout(
    attributes=["in_pos", "in_normal", "in_uv"],
    format="3f 3f 2f",
    stride_bytes=_VERTEX.size,
)


class _Bounds:
    def __init__(self) -> None:
        self.lo = [float("inf")] * 3
        self.hi = [float("-inf")] * 3

    def add(self, p: Vec3) -> None:
        for axis in range(3):
            self.lo[axis] = min(self.lo[axis], p[axis])
            self.hi[axis] = max(self.hi[axis], p[axis])

    def aabb(self) -> Tuple[Vec3, Vec3]:
        return (tuple(self.lo), tuple(self.hi))  # type: ignore[return-value]


class ObjLoader(AssetLoader):
    """
    Wavefront OBJ, triangles only. The whole file is the default asset;
    every ``o name`` group is also published as the sub-asset ``#name``.
    """

    type_tag = "mesh"
    extensions = (".obj",)

    def load(self, data: bytes, context: LoadContext) -> MeshData:
        positions: List[Vec3] = []
        normals: List[Vec3] = []
        uvs: List[Tuple[float, float]] = []

        vertices: List[bytes] = []
        bounds = _Bounds()
        objects: Dict[str, Tuple[List[bytes], _Bounds]] = {}
        current: Optional[str] = None

        for line in data.decode("utf-8").splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue

            parts = line.split()
            tag = parts[0]

            if tag == "v":
                px, py, pz = map(float, parts[1:4])
                positions.append((px, py, pz))

            elif tag == "vn":
                nx, ny, nz = map(float, parts[1:4])
                normals.append((nx, ny, nz))

            elif tag == "vt":
                u, v = map(float, parts[1:3])
                uvs.append((u, v))

            elif tag == "o":
                current = " ".join(parts[1:]) or None
                if current is not None and current not in objects:
                    objects[current] = ([], _Bounds())

            elif tag == "f":
                if len(parts) != 4:
                    raise ValueError(f"Only triangular faces supported in {context.path}")

                for vert in parts[1:4]:
                    v_idx, vt_idx, vn_idx = self._parse_face_vertex(vert)

                    pos = positions[v_idx]
                    nx, ny, nz = normals[vn_idx] if vn_idx is not None else (0.0, 1.0, 0.0)
                    u, v = uvs[vt_idx] if vt_idx is not None else (0.0, 0.0)

                    packed = _VERTEX.pack(*pos, nx, ny, nz, u, v)
                    vertices.append(packed)
                    bounds.add(pos)
                    if current is not None:
                        objects[current][0].append(packed)
                        objects[current][1].add(pos)

        if not vertices:
            raise ValueError(f"No geometry found in OBJ: {context.path}")

        for name, (object_vertices, object_bounds) in objects.items():
            if object_vertices:
                context.set_labeled_asset(
                    name,
                    MeshData(
                        vertices=b"".join(object_vertices),
                        vertex_layout=LAYOUT,
                        aabb=object_bounds.aabb(),
                    ),
                )

        return MeshData(
            vertices=b"".join(vertices),
            vertex_layout=LAYOUT,
            aabb=bounds.aabb(),
            indices=None,
        )

    def _parse_index(self, val: str) -> int | None:
        if not val:
            return None
        idx = int(val)
        return idx - 1 if idx > 0 else idx

    def _parse_face_vertex(self, token: str) -> Tuple[int, int | None, int | None]:
        parts = token.split("/")
        v = self._parse_index(parts[0])
        vt = self._parse_index(parts[1]) if len(parts) > 1 and parts[1] else None
        vn = self._parse_index(parts[2]) if len(parts) > 2 and parts[2] else None

        if v is None:
            raise ValueError(f"Invalid vertex index in token: {token}")

        return v, vt, vn
