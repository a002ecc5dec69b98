"""glTF 2.0 (scene-package) decoding, for both ``.glb`` and ``.gltf``.

The container is split by hand, the JSON document is loaded into
``pygltflib.GLTF2`` for typed access, and every buffer is resolved through
one of four routes: the GLB binary chunk, a ``data:`` URI, an internal
``blob:`` reference (via the per-decode BlobTable), or an external file read
through the injected ByteSource.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import struct
import urllib.parse
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import numpy as np
import pygltflib

from render3d.errors import MissingBlobError, NonFatalRenderError, ParseError, TextureDecodeError
from render3d.formats.sources import BlobTable, ByteSource, is_blob_uri, blob_id
from render3d.formats.textures import PendingImage, decode_images
from render3d.scene_graph import (
    DEFAULT_GLTF_MATERIAL,
    Geometry,
    Material,
    MeshPart,
    SceneNode,
    Texture,
    TextureSource,
    TextureSourceKind,
)

logger = logging.getLogger("render3d.formats.gltf")

GLB_MAGIC = b"glTF"
GLB_HEADER = struct.Struct("<4sII")
GLB_CHUNK_HEADER = struct.Struct("<II")
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

MODE_TRIANGLES = 4
MODE_TRIANGLE_STRIP = 5
MODE_TRIANGLE_FAN = 6

COMPONENT_DTYPES = {
    5120: np.dtype("<i1"),
    5121: np.dtype("<u1"),
    5122: np.dtype("<i2"),
    5123: np.dtype("<u2"),
    5125: np.dtype("<u4"),
    5126: np.dtype("<f4"),
}

TYPE_SIZES = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}

# Required extensions that change how geometry bytes are laid out.
UNSUPPORTED_REQUIRED = {"KHR_draco_mesh_compression", "EXT_meshopt_compression", "KHR_mesh_quantization"}


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------

@dataclass
class GltfPackage:
    """Parsed document plus the bytes it came from.

    ``payload`` is the whole model file; ``blob:`` buffer ranges count from
    its first byte, GLB header included.
    """

    document: Dict
    gltf: pygltflib.GLTF2
    binary_chunk: Optional[bytes]
    payload: bytes


def split_glb(data: bytes) -> Tuple[bytes, Optional[bytes]]:
    """Return the (JSON chunk, BIN chunk or None) of a GLB container."""
    if len(data) < GLB_HEADER.size:
        raise ParseError("GLB shorter than its 12-byte header")
    magic, version, length = GLB_HEADER.unpack_from(data, 0)
    if magic != GLB_MAGIC:
        raise ParseError("missing glTF magic")
    if version != 2:
        raise ParseError(f"unsupported GLB container version {version}")
    if length > len(data):
        raise ParseError(f"GLB declares {length} bytes but only {len(data)} are present")

    json_chunk: Optional[bytes] = None
    bin_chunk: Optional[bytes] = None
    offset = GLB_HEADER.size
    while offset + GLB_CHUNK_HEADER.size <= length:
        chunk_length, chunk_type = GLB_CHUNK_HEADER.unpack_from(data, offset)
        offset += GLB_CHUNK_HEADER.size
        chunk = data[offset:offset + chunk_length]
        if len(chunk) != chunk_length:
            raise ParseError("GLB chunk runs past the end of the file")
        if chunk_type == CHUNK_JSON and json_chunk is None:
            json_chunk = chunk
        elif chunk_type == CHUNK_BIN and bin_chunk is None:
            bin_chunk = chunk
        offset += chunk_length
    if json_chunk is None:
        raise ParseError("GLB has no JSON chunk")
    return json_chunk, bin_chunk


def load_package(data: bytes) -> GltfPackage:
    """Parse GLB or JSON glTF bytes into a GltfPackage."""
    if data[:4] == GLB_MAGIC:
        json_bytes, bin_chunk = split_glb(data)
    else:
        json_bytes, bin_chunk = data, None

    try:
        document = json.loads(json_bytes.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError(f"invalid glTF JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ParseError("glTF document must be a JSON object")

    version = str((document.get("asset") or {}).get("version", ""))
    if not version.startswith("2."):
        raise ParseError(f"unsupported glTF asset version '{version or '<missing>'}'")

    required = set(document.get("extensionsRequired") or [])
    blocked = required & UNSUPPORTED_REQUIRED
    if blocked:
        raise ParseError(f"required extension(s) not supported: {sorted(blocked)}")
    for name in sorted(required - blocked):
        logger.warning("Ignoring required extension %s", name)

    try:
        gltf = pygltflib.GLTF2.from_dict(document, infer_missing=True)
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise ParseError(f"document is not valid glTF: {exc}") from exc

    return GltfPackage(document=document, gltf=gltf, binary_chunk=bin_chunk, payload=data)


def _decode_data_uri(uri: str) -> bytes:
    header, sep, body = uri.partition(",")
    if not sep:
        raise ValueError("data URI has no payload separator")
    if header.endswith(";base64"):
        return base64.b64decode(body, validate=False)
    return urllib.parse.unquote_to_bytes(body)


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

@dataclass
class GltfResult:
    root: SceneNode
    textures: List[Texture] = field(default_factory=list)
    warnings: List[NonFatalRenderError] = field(default_factory=list)


class GltfDecoder:
    """Builds a SceneNode tree from one GltfPackage.

    One instance per decode; it owns the blob table and the buffer cache
    for that decode and nothing else.
    """

    def __init__(
        self,
        package: GltfPackage,
        base_dir: str,
        source: ByteSource,
        texture_workers: int = 4,
    ) -> None:
        self.package = package
        self.gltf = package.gltf
        self.base_dir = base_dir
        self.source = source
        self.texture_workers = texture_workers
        self.blobs = BlobTable.from_buffers(package.document.get("buffers") or [], package.payload)
        self.warnings: List[NonFatalRenderError] = []
        self._buffers: Dict[int, bytes] = {}
        self._geometry_cache: Dict[Tuple[int, int], Geometry] = {}
        self._materials: Dict[int, Material] = {}

    # -- entry point ----------------------------------------------------------

    def decode(self) -> GltfResult:
        textures = self._resolve_textures()
        self._build_materials(textures)

        scene_name, roots = self._scene_roots()
        root = SceneNode(name=scene_name)
        visited: Set[int] = set()
        for index in roots:
            root.add(self._build_node(index, visited))

        logger.info(
            "Decoded glTF: %d node(s), %d mesh node(s), %d texture(s), %d warning(s)",
            len(visited), len(root.mesh_nodes()), len(textures), len(self.warnings),
        )
        return GltfResult(root=root, textures=list(textures.values()), warnings=list(self.warnings))

    # -- buffers / accessors -------------------------------------------------

    def buffer_bytes(self, index: int) -> bytes:
        if index in self._buffers:
            return self._buffers[index]
        buffers = self.gltf.buffers or []
        if not 0 <= index < len(buffers):
            raise ParseError(f"buffer {index} does not exist")
        buffer = buffers[index]
        uri = buffer.uri

        if uri is None:
            if self.package.binary_chunk is None:
                raise ParseError(f"buffer {index} has no uri and there is no GLB binary chunk")
            data = self.package.binary_chunk
        elif uri.startswith("data:"):
            try:
                data = _decode_data_uri(uri)
            except (ValueError, binascii.Error) as exc:
                raise ParseError(f"buffer {index} has a malformed data URI") from exc
        elif is_blob_uri(uri):
            data = self.blobs.resolve(uri)
        else:
            path = os.path.join(self.base_dir, urllib.parse.unquote(uri))
            try:
                data = self.source.read_bytes(path)
            except OSError as exc:
                raise ParseError(f"buffer {index} could not be read from '{path}': {exc}") from exc

        declared = buffer.byteLength or 0
        if len(data) < declared:
            raise ParseError(f"buffer {index} holds {len(data)} bytes, {declared} declared")
        self._buffers[index] = data
        return data

    def buffer_view_bytes(self, index: int) -> memoryview:
        views = self.gltf.bufferViews or []
        if not 0 <= index < len(views):
            raise ParseError(f"bufferView {index} does not exist")
        view = views[index]
        data = self.buffer_bytes(view.buffer)
        start = view.byteOffset or 0
        end = start + (view.byteLength or 0)
        if end > len(data):
            raise ParseError(f"bufferView {index} exceeds buffer {view.buffer}")
        return memoryview(data)[start:end]

    def read_accessor(self, index: int) -> np.ndarray:
        """Return accessor data as a (count, components) array.

        Normalized integer accessors are converted to float32.
        """
        accessors = self.gltf.accessors or []
        if not 0 <= index < len(accessors):
            raise ParseError(f"accessor {index} does not exist")
        accessor = accessors[index]
        dtype = COMPONENT_DTYPES.get(accessor.componentType)
        components = TYPE_SIZES.get(accessor.type)
        if dtype is None or components is None:
            raise ParseError(
                f"accessor {index} has unsupported layout {accessor.componentType}/{accessor.type}"
            )
        count = accessor.count or 0

        if accessor.bufferView is None:
            array = np.zeros((count, components), dtype=dtype)
        else:
            view_bytes = self.buffer_view_bytes(accessor.bufferView)
            view = self.gltf.bufferViews[accessor.bufferView]
            element = dtype.itemsize * components
            stride = view.byteStride or element
            offset = accessor.byteOffset or 0
            needed = offset + stride * (count - 1) + element if count else 0
            if needed > len(view_bytes):
                raise ParseError(f"accessor {index} reads past the end of its bufferView")
            if count == 0:
                array = np.zeros((0, components), dtype=dtype)
            else:
                array = np.array(np.ndarray(
                    shape=(count, components),
                    dtype=dtype,
                    buffer=view_bytes,
                    offset=offset,
                    strides=(stride, dtype.itemsize),
                ))

        if accessor.sparse is not None:
            logger.warning("Accessor %d uses sparse storage; sparse values are ignored", index)

        if accessor.normalized and dtype.kind in "iu":
            info = np.iinfo(dtype)
            array = np.maximum(array.astype(np.float32) / float(info.max), -1.0)
        return array

    # -- textures / materials ------------------------------------------------

    def _material_image(self, material) -> Optional[int]:
        pbr = material.pbrMetallicRoughness
        info = pbr.baseColorTexture if pbr is not None else None
        if info is None or info.index is None:
            return None
        textures = self.gltf.textures or []
        if not 0 <= info.index < len(textures):
            raise ParseError(f"texture {info.index} does not exist")
        if (info.texCoord or 0) != 0:
            logger.warning("Texture %d uses TEXCOORD_%d; only TEXCOORD_0 is read", info.index, info.texCoord)
        return textures[info.index].source

    def _pending_image(self, index: int) -> PendingImage:
        images = self.gltf.images or []
        if not 0 <= index < len(images):
            raise ParseError(f"image {index} does not exist")
        image = images[index]
        uri = image.uri

        if image.bufferView is not None:
            source = TextureSource(TextureSourceKind.BUFFER_VIEW, f"bufferView:{image.bufferView}")
            try:
                return PendingImage(source, data=bytes(self.buffer_view_bytes(image.bufferView)))
            except MissingBlobError as exc:
                return PendingImage(source, error=exc)
        if is_blob_uri(uri):
            source = TextureSource(TextureSourceKind.BLOB, blob_id(uri))
            try:
                return PendingImage(source, data=self.blobs.resolve(uri))
            except MissingBlobError as exc:
                return PendingImage(source, error=exc)
        if uri and uri.startswith("data:"):
            source = TextureSource(TextureSourceKind.DATA_URI, f"image:{index}")
            try:
                return PendingImage(source, data=_decode_data_uri(uri))
            except (ValueError, binascii.Error) as exc:
                return PendingImage(source, error=TextureDecodeError(source.ref, str(exc)))
        if uri:
            path = os.path.join(self.base_dir, urllib.parse.unquote(uri))
            source = TextureSource(TextureSourceKind.EXTERNAL, path)
            try:
                return PendingImage(source, data=self.source.read_bytes(path))
            except OSError as exc:
                return PendingImage(source, error=TextureDecodeError(path, str(exc)))
        source = TextureSource(TextureSourceKind.BUFFER_VIEW, f"image:{index}")
        return PendingImage(source, error=TextureDecodeError(source.ref, "image has neither uri nor bufferView"))

    def _resolve_textures(self) -> Dict[int, Texture]:
        """Decode every image a material uses; returns image index -> Texture."""
        wanted = set()
        for material in self.gltf.materials or []:
            image = self._material_image(material)
            if image is not None:
                wanted.add(image)
        pending = {index: self._pending_image(index) for index in sorted(wanted)}
        outcomes = decode_images(pending, max_workers=self.texture_workers)

        textures: Dict[int, Texture] = {}
        for index in sorted(outcomes):
            outcome = outcomes[index]
            if isinstance(outcome, Texture):
                textures[index] = outcome
            else:
                logger.warning("Texture for image %d left unset: %s", index, outcome)
                self.warnings.append(outcome)
        return textures

    def _build_materials(self, textures: Dict[int, Texture]) -> None:
        for index, material in enumerate(self.gltf.materials or []):
            pbr = material.pbrMetallicRoughness
            base_color = (1.0, 1.0, 1.0, 1.0)
            metalness = roughness = 1.0
            if pbr is not None:
                if pbr.baseColorFactor is not None:
                    base_color = tuple(float(c) for c in pbr.baseColorFactor)
                if pbr.metallicFactor is not None:
                    metalness = float(pbr.metallicFactor)
                if pbr.roughnessFactor is not None:
                    roughness = float(pbr.roughnessFactor)
            image = self._material_image(material)
            self._materials[index] = Material(
                name=material.name or f"material_{index}",
                base_color=base_color,
                metalness=metalness,
                roughness=roughness,
                texture=textures.get(image) if image is not None else None,
                double_sided=bool(material.doubleSided),
            )

    # -- meshes ----------------------------------------------------------------

    def _triangle_indices(self, indices: np.ndarray, mode: int) -> Optional[np.ndarray]:
        if mode == MODE_TRIANGLES:
            return indices
        if mode not in (MODE_TRIANGLE_STRIP, MODE_TRIANGLE_FAN):
            return None
        n = len(indices) - 2
        if n <= 0:
            return np.zeros(0, dtype=np.uint32)
        i = np.arange(n)
        if mode == MODE_TRIANGLE_STRIP:
            odd = (i % 2).astype(bool)
            a = indices[i]
            b = np.where(odd, indices[i + 2], indices[i + 1])
            c = np.where(odd, indices[i + 1], indices[i + 2])
        else:
            a = indices[i + 1]
            b = indices[i + 2]
            c = np.full(n, indices[0], dtype=indices.dtype)
        return np.stack([a, b, c], axis=1).reshape(-1)

    def _geometry(self, mesh_index: int, prim_index: int, primitive) -> Optional[Geometry]:
        key = (mesh_index, prim_index)
        if key in self._geometry_cache:
            return self._geometry_cache[key]

        attributes = primitive.attributes
        if attributes is None or getattr(attributes, "POSITION", None) is None:
            raise ParseError(f"mesh {mesh_index} primitive {prim_index} has no POSITION")

        positions = self.read_accessor(attributes.POSITION)
        normals = None
        if getattr(attributes, "NORMAL", None) is not None:
            normals = self.read_accessor(attributes.NORMAL)
        uvs = None
        if getattr(attributes, "TEXCOORD_0", None) is not None:
            uvs = self.read_accessor(attributes.TEXCOORD_0)

        if primitive.indices is not None:
            indices = self.read_accessor(primitive.indices).reshape(-1).astype(np.uint32)
        else:
            indices = np.arange(len(positions), dtype=np.uint32)

        mode = MODE_TRIANGLES if primitive.mode is None else primitive.mode
        triangles = self._triangle_indices(indices, mode)
        if triangles is None:
            logger.warning(
                "Skipping mesh %d primitive %d: mode %d is not a triangle mode",
                mesh_index, prim_index, mode,
            )
            return None

        geometry = Geometry(positions=positions, indices=triangles, normals=normals, uvs=uvs)
        self._geometry_cache[key] = geometry
        return geometry

    def _mesh_parts(self, mesh_index: int) -> List[MeshPart]:
        meshes = self.gltf.meshes or []
        if not 0 <= mesh_index < len(meshes):
            raise ParseError(f"mesh {mesh_index} does not exist")
        parts: List[MeshPart] = []
        for prim_index, primitive in enumerate(meshes[mesh_index].primitives or []):
            try:
                geometry = self._geometry(mesh_index, prim_index, primitive)
            except MissingBlobError as exc:
                logger.warning(
                    "Skipping mesh %d primitive %d: %s", mesh_index, prim_index, exc,
                )
                self.warnings.append(exc)
                continue
            if geometry is None:
                continue
            if primitive.material is None:
                material = DEFAULT_GLTF_MATERIAL
            elif primitive.material in self._materials:
                material = self._materials[primitive.material]
            else:
                raise ParseError(f"material {primitive.material} does not exist")
            parts.append(MeshPart(geometry, material))
        return parts

    # -- nodes -----------------------------------------------------------------

    def _scene_roots(self) -> Tuple[str, List[int]]:
        scenes = self.gltf.scenes or []
        if scenes:
            index = self.gltf.scene if self.gltf.scene is not None else 0
            if not 0 <= index < len(scenes):
                raise ParseError(f"default scene {index} does not exist")
            scene = scenes[index]
            return scene.name or f"scene_{index}", list(scene.nodes or [])
        nodes = self.gltf.nodes or []
        children = {c for node in nodes for c in (node.children or [])}
        return "scene", [i for i in range(len(nodes)) if i not in children]

    def _build_node(self, index: int, visited: Set[int]) -> SceneNode:
        nodes = self.gltf.nodes or []
        if not 0 <= index < len(nodes):
            raise ParseError(f"node {index} does not exist")
        if index in visited:
            raise ParseError(f"node {index} is referenced more than once (cycle or shared child)")
        visited.add(index)
        node = nodes[index]

        scene_node = SceneNode(name=node.name or f"node_{index}")
        if node.matrix is not None and len(node.matrix) == 16:
            scene_node.matrix = tuple(float(v) for v in node.matrix)
        else:
            if node.translation is not None:
                scene_node.translation = tuple(float(v) for v in node.translation)
            if node.rotation is not None:
                scene_node.rotation = tuple(float(v) for v in node.rotation)
            if node.scale is not None:
                scene_node.scale = tuple(float(v) for v in node.scale)

        if node.mesh is not None:
            parts = self._mesh_parts(node.mesh)
            if len(parts) == 1:
                scene_node.mesh = parts[0]
            else:
                for i, part in enumerate(parts):
                    scene_node.add(SceneNode(name=f"{scene_node.name}_primitive{i}", mesh=part))

        for child in node.children or []:
            scene_node.add(self._build_node(child, visited))
        return scene_node


def decode_gltf(
    data: bytes,
    base_dir: str,
    source: ByteSource,
    texture_workers: int = 4,
) -> GltfResult:
    package = load_package(data)
    return GltfDecoder(package, base_dir, source, texture_workers=texture_workers).decode()
