"""In-memory model builders shared by the test modules."""

from __future__ import annotations

import io
import json
import struct
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from PIL import Image

# 8 corners of the unit cube centred on the origin, 12 outward-wound triangles.
_CORNERS = np.array([
    [-0.5, -0.5, -0.5], [0.5, -0.5, -0.5], [0.5, 0.5, -0.5], [-0.5, 0.5, -0.5],
    [-0.5, -0.5, 0.5], [0.5, -0.5, 0.5], [0.5, 0.5, 0.5], [-0.5, 0.5, 0.5],
], dtype=np.float32)
_CUBE_FACES = np.array([
    [0, 2, 1], [0, 3, 2],  # -z
    [4, 5, 6], [4, 6, 7],  # +z
    [0, 1, 5], [0, 5, 4],  # -y
    [3, 7, 6], [3, 6, 2],  # +y
    [0, 4, 7], [0, 7, 3],  # -x
    [1, 2, 6], [1, 6, 5],  # +x
], dtype=np.uint32)


def cube_triangles(size: float = 1.0, offset: Sequence[float] = (0.0, 0.0, 0.0)) -> np.ndarray:
    """(12, 3, 3) float32 triangle corners of an axis-aligned cube."""
    corners = _CORNERS * size + np.asarray(offset, dtype=np.float32)
    return corners[_CUBE_FACES]


def stl_binary(
    triangles: np.ndarray,
    normals: Optional[np.ndarray] = None,
    header: bytes = b"binary stl fixture",
) -> bytes:
    triangles = np.asarray(triangles, dtype=np.float32).reshape(-1, 3, 3)
    if normals is None:
        normals = np.zeros((len(triangles), 3), dtype=np.float32)
    out = bytearray(header.ljust(80, b"\0"))
    out += struct.pack("<I", len(triangles))
    for normal, tri in zip(normals, triangles):
        out += struct.pack("<3f", *normal)
        out += struct.pack("<9f", *tri.reshape(-1))
        out += struct.pack("<H", 0)
    return bytes(out)


def stl_ascii(triangles: np.ndarray, name: str = "fixture") -> bytes:
    lines = [f"solid {name}"]
    for tri in np.asarray(triangles, dtype=np.float32).reshape(-1, 3, 3):
        lines.append("  facet normal 0 0 0")
        lines.append("    outer loop")
        for v in tri:
            lines.append(f"      vertex {v[0]:.6e} {v[1]:.6e} {v[2]:.6e}")
        lines.append("    endloop")
        lines.append("  endfacet")
    lines.append(f"endsolid {name}")
    return ("\n".join(lines) + "\n").encode("ascii")


def png_bytes(width: int = 2, height: int = 2, color=(255, 0, 0, 255)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def _pad4(data: bytes, fill: bytes = b"\0") -> bytes:
    return data + fill * (-len(data) % 4)


class GltfBuilder:
    """Assembles a minimal glTF 2.0 document and its binary buffer.

    Buffer 0 is the GLB binary chunk. Blob buffers are stored in that same
    chunk and referenced through ``blob:nodedata:<id>`` URIs, with ranges
    counted from the start of the GLB file.
    """

    def __init__(self) -> None:
        self.bin = bytearray()
        self._blob_offsets: Dict[int, int] = {}
        self.doc: Dict[str, Any] = {
            "asset": {"version": "2.0", "generator": "render3d fixtures"},
            "buffers": [{"byteLength": 0}],
            "bufferViews": [],
            "accessors": [],
            "meshes": [],
            "nodes": [],
            "scenes": [{"nodes": []}],
            "scene": 0,
        }

    def _append(self, data: bytes) -> int:
        while len(self.bin) % 4:
            self.bin.append(0)
        offset = len(self.bin)
        self.bin += data
        return offset

    def add_view(self, data: bytes, buffer: int = 0, stride: Optional[int] = None) -> int:
        view: Dict[str, Any] = {"buffer": buffer, "byteLength": len(data)}
        if buffer == 0:
            view["byteOffset"] = self._append(data)
        else:
            view["byteOffset"] = 0
        if stride:
            view["byteStride"] = stride
        self.doc["bufferViews"].append(view)
        return len(self.doc["bufferViews"]) - 1

    def add_blob_buffer(self, blob: str, data: bytes) -> int:
        """Store ``data`` in the binary chunk and expose it as a blob buffer."""
        offset = self._append(data)
        self.doc["buffers"].append({
            "uri": f"blob:nodedata:{blob}",
            "byteOffset": offset,
            "byteLength": len(data),
        })
        index = len(self.doc["buffers"]) - 1
        self._blob_offsets[index] = offset
        return index

    def add_accessor(self, array: np.ndarray, kind: str, view: Optional[int] = None, **extra: Any) -> int:
        array = np.ascontiguousarray(array)
        component = {
            np.dtype("float32"): 5126,
            np.dtype("uint32"): 5125,
            np.dtype("uint16"): 5123,
            np.dtype("uint8"): 5121,
        }[array.dtype]
        if view is None:
            view = self.add_view(array.tobytes())
        accessor: Dict[str, Any] = {
            "bufferView": view,
            "componentType": component,
            "count": int(array.shape[0]),
            "type": kind,
        }
        if kind == "VEC3" and array.dtype == np.float32:
            accessor["min"] = array.min(axis=0).tolist()
            accessor["max"] = array.max(axis=0).tolist()
        accessor.update(extra)
        self.doc["accessors"].append(accessor)
        return len(self.doc["accessors"]) - 1

    def add_mesh(
        self,
        positions: np.ndarray,
        indices: Optional[np.ndarray] = None,
        uvs: Optional[np.ndarray] = None,
        normals: Optional[np.ndarray] = None,
        material: Optional[int] = None,
        mode: Optional[int] = None,
        extra_primitives: Sequence[Dict[str, Any]] = (),
    ) -> int:
        attributes = {"POSITION": self.add_accessor(np.asarray(positions, np.float32), "VEC3")}
        if normals is not None:
            attributes["NORMAL"] = self.add_accessor(np.asarray(normals, np.float32), "VEC3")
        if uvs is not None:
            attributes["TEXCOORD_0"] = self.add_accessor(np.asarray(uvs, np.float32), "VEC2")
        primitive: Dict[str, Any] = {"attributes": attributes}
        if indices is not None:
            primitive["indices"] = self.add_accessor(np.asarray(indices, np.uint32), "SCALAR")
        if material is not None:
            primitive["material"] = material
        if mode is not None:
            primitive["mode"] = mode
        self.doc["meshes"].append({"primitives": [primitive, *extra_primitives]})
        return len(self.doc["meshes"]) - 1

    def add_node(self, root: bool = True, **fields: Any) -> int:
        self.doc["nodes"].append(fields)
        index = len(self.doc["nodes"]) - 1
        if root:
            self.doc["scenes"][0]["nodes"].append(index)
        return index

    def add_image_from_view(self, data: bytes, mime: str = "image/png") -> int:
        view = self.add_view(data)
        return self._add_image({"bufferView": view, "mimeType": mime})

    def add_image_uri(self, uri: str) -> int:
        return self._add_image({"uri": uri})

    def _add_image(self, image: Dict[str, Any]) -> int:
        self.doc.setdefault("images", []).append(image)
        return len(self.doc["images"]) - 1

    def add_material(
        self,
        image: Optional[int] = None,
        base_color: Optional[List[float]] = None,
        name: Optional[str] = None,
        **pbr: Any,
    ) -> int:
        pbr_block: Dict[str, Any] = dict(pbr)
        if base_color is not None:
            pbr_block["baseColorFactor"] = base_color
        if image is not None:
            self.doc.setdefault("textures", []).append({"source": image})
            pbr_block["baseColorTexture"] = {"index": len(self.doc["textures"]) - 1}
        material: Dict[str, Any] = {"pbrMetallicRoughness": pbr_block}
        if name:
            material["name"] = name
        self.doc.setdefault("materials", []).append(material)
        return len(self.doc["materials"]) - 1

    def glb(self) -> bytes:
        self.doc["buffers"][0]["byteLength"] = len(self.bin)
        # blob offsets count from the file start, which moves with the JSON length
        bin_start = 0
        while True:
            for index, offset in self._blob_offsets.items():
                self.doc["buffers"][index]["byteOffset"] = bin_start + offset
            json_chunk = _pad4(json.dumps(self.doc).encode("utf-8"), b" ")
            start = 12 + 8 + len(json_chunk) + 8
            if start == bin_start:
                break
            bin_start = start
        bin_chunk = _pad4(bytes(self.bin))
        total = 12 + 8 + len(json_chunk) + 8 + len(bin_chunk)
        out = bytearray(struct.pack("<4sII", b"glTF", 2, total))
        out += struct.pack("<II", len(json_chunk), 0x4E4F534A) + json_chunk
        out += struct.pack("<II", len(bin_chunk), 0x004E4942) + bin_chunk
        return bytes(out)

    def gltf_json(self, bin_uri: str = "scene.bin") -> bytes:
        """Document form with buffer 0 as an external side file named ``bin_uri``."""
        doc = json.loads(json.dumps(self.doc))
        doc["buffers"][0] = {"uri": bin_uri, "byteLength": len(self.bin)}
        return json.dumps(doc).encode("utf-8")


def cube_glb(**material: Any) -> bytes:
    """A unit cube as an indexed glTF mesh on a single root node."""
    builder = GltfBuilder()
    mat = builder.add_material(**material) if material else None
    builder.add_mesh(_CORNERS, _CUBE_FACES.reshape(-1), material=mat)
    builder.add_node(name="cube", mesh=0)
    return builder.glb()
