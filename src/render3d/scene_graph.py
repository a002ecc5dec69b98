"""In-memory scene representation shared by every pipeline stage.

Coordinates follow the glTF convention: right-handed, +Y up, cameras look
down their local -Z axis. Only the rasterizer converts to Blender's Z-up
world.

Geometry, Material and Texture are immutable once decoded. SceneNode
transforms are adjusted by the assembler and then left alone.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from render3d.errors import ParseError

Vec3 = Tuple[float, float, float]
Quat = Tuple[float, float, float, float]  # x, y, z, w (glTF order)
RGBA = Tuple[float, float, float, float]

IDENTITY_QUAT: Quat = (0.0, 0.0, 0.0, 1.0)


def _frozen_array(values, dtype, columns: Optional[int]) -> np.ndarray:
    arr = np.ascontiguousarray(values, dtype=dtype)
    if columns is not None:
        arr = arr.reshape(-1, columns)
    else:
        arr = arr.reshape(-1)
    arr.setflags(write=False)
    return arr


def quat_to_matrix(q: Quat) -> np.ndarray:
    """3x3 rotation matrix of an xyzw quaternion (normalized first)."""
    x, y, z, w = np.asarray(q, dtype=np.float64) / (np.linalg.norm(q) or 1.0)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])


def quat_multiply(a: Quat, b: Quat) -> Quat:
    """Hamilton product ``a * b`` of xyzw quaternions (``b`` applied first)."""
    ax, ay, az, aw = a
    bx, by, bz, bw = b
    return (
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
        aw * bw - ax * bx - ay * by - az * bz,
    )


def axis_angle_quat(axis: str, angle: float) -> Quat:
    """xyzw quaternion turning ``angle`` radians about axis "X", "Y" or "Z"."""
    half = 0.5 * angle
    vec = [0.0, 0.0, 0.0]
    vec["XYZ".index(axis.upper())] = math.sin(half)
    return (vec[0], vec[1], vec[2], math.cos(half))


# ---------------------------------------------------------------------------
# Geometry / material / texture
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class Geometry:
    """Indexed triangle list.

    ``positions``/``normals`` are (N, 3) float32, ``uvs`` is (N, 2) float32
    and ``indices`` is a flat uint32 array whose length is a multiple of 3.
    """

    positions: np.ndarray
    indices: np.ndarray
    normals: Optional[np.ndarray] = None
    uvs: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        positions = _frozen_array(self.positions, np.float32, 3)
        indices = _frozen_array(self.indices, np.uint32, None)
        object.__setattr__(self, "positions", positions)
        object.__setattr__(self, "indices", indices)

        if len(indices) % 3 != 0:
            raise ParseError(f"index count {len(indices)} is not a multiple of 3")
        if len(indices) and int(indices.max()) >= len(positions):
            raise ParseError(
                f"index {int(indices.max())} out of range for {len(positions)} vertices"
            )
        if self.normals is not None:
            normals = _frozen_array(self.normals, np.float32, 3)
            if len(normals) != len(positions):
                raise ParseError("normal count does not match vertex count")
            object.__setattr__(self, "normals", normals)
        if self.uvs is not None:
            uvs = _frozen_array(self.uvs, np.float32, 2)
            if len(uvs) != len(positions):
                raise ParseError("uv count does not match vertex count")
            object.__setattr__(self, "uvs", uvs)

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    def bounds(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Local-space (min, max) corners, or None when there are no vertices."""
        if not len(self.positions):
            return None
        return self.positions.min(axis=0), self.positions.max(axis=0)


class TextureSourceKind(str, enum.Enum):
    EXTERNAL = "external"
    BLOB = "blob"
    BUFFER_VIEW = "buffer_view"
    DATA_URI = "data_uri"


@dataclass(frozen=True)
class TextureSource:
    """Where texture bytes came from: an external path or an in-package id."""

    kind: TextureSourceKind
    ref: str


@dataclass(frozen=True, eq=False)
class Texture:
    """Decoded RGBA8 image; rows run top to bottom."""

    width: int
    height: int
    pixels: bytes
    source: TextureSource

    def __post_init__(self) -> None:
        expected = self.width * self.height * 4
        if len(self.pixels) != expected:
            raise ValueError(
                f"texture pixel buffer is {len(self.pixels)} bytes, expected {expected}"
            )


@dataclass(frozen=True)
class Material:
    name: str = "default"
    base_color: RGBA = (1.0, 1.0, 1.0, 1.0)
    metalness: float = 0.0
    roughness: float = 1.0
    texture: Optional[Texture] = None
    double_sided: bool = False


# Plain triangle-soup files carry no material; this is the look they get.
DEFAULT_STL_MATERIAL = Material(name="stl_default", metalness=0.3, roughness=0.7)

# glTF 2.0 default for primitives without a material.
DEFAULT_GLTF_MATERIAL = Material(name="gltf_default", metalness=1.0, roughness=1.0)


# ---------------------------------------------------------------------------
# Scene graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MeshPart:
    geometry: Geometry
    material: Material


@dataclass(eq=False)
class SceneNode:
    """Tree node: a local transform, an optional mesh and owned children.

    The transform is either TRS (``translation``, ``rotation`` xyzw,
    ``scale``) or, when set, an explicit column-major 4x4 ``matrix``.
    """

    name: str = ""
    translation: Vec3 = (0.0, 0.0, 0.0)
    rotation: Quat = IDENTITY_QUAT
    scale: Vec3 = (1.0, 1.0, 1.0)
    matrix: Optional[Tuple[float, ...]] = None
    mesh: Optional[MeshPart] = None
    children: List["SceneNode"] = field(default_factory=list)
    cast_shadow: bool = False
    receive_shadow: bool = False

    def add(self, child: "SceneNode") -> "SceneNode":
        self.children.append(child)
        return child

    def walk(self, depth: int = 0) -> Iterator[Tuple["SceneNode", int]]:
        """Depth-first pre-order traversal yielding ``(node, depth)``."""
        yield self, depth
        for child in self.children:
            yield from child.walk(depth + 1)

    def mesh_nodes(self) -> List["SceneNode"]:
        return [node for node, _ in self.walk() if node.mesh is not None]

    def local_matrix(self) -> np.ndarray:
        """Local transform as a 4x4 float64 array (column vectors)."""
        if self.matrix is not None:
            return np.array(self.matrix, dtype=np.float64).reshape(4, 4).T
        out = np.eye(4)
        out[:3, :3] = quat_to_matrix(self.rotation) * np.asarray(self.scale, dtype=np.float64)
        out[:3, 3] = self.translation
        return out


# ---------------------------------------------------------------------------
# Lights / camera
# ---------------------------------------------------------------------------

class LightKind(str, enum.Enum):
    AMBIENT = "ambient"
    DIRECTIONAL = "directional"
    POINT = "point"


@dataclass(frozen=True)
class Light:
    kind: LightKind
    color: Tuple[float, float, float]
    intensity: float
    position: Optional[Vec3] = None
    cast_shadow: bool = False

    def __post_init__(self) -> None:
        if self.kind is not LightKind.AMBIENT and self.position is None:
            raise ValueError(f"{self.kind.value} light needs a position")
        if self.kind is LightKind.AMBIENT and self.cast_shadow:
            raise ValueError("ambient light cannot cast shadows")


@dataclass(frozen=True)
class Camera:
    position: Vec3
    target: Vec3
    fov_deg: float
    aspect: float
    near: float
    far: float

    @property
    def distance(self) -> float:
        return float(np.linalg.norm(np.subtract(self.position, self.target)))


# ---------------------------------------------------------------------------
# Frame buffer
# ---------------------------------------------------------------------------

class RowOrder(str, enum.Enum):
    BOTTOM_UP = "bottom_up"   # row 0 is the bottom of the image (GL/Blender)
    TOP_DOWN = "top_down"     # row 0 is the top of the image (PNG)


class ColorSpace(str, enum.Enum):
    SRGB = "srgb"
    LINEAR = "linear"


@dataclass(frozen=True, eq=False)
class FrameBuffer:
    """RGBA8 pixel buffer of exactly ``width * height * 4`` bytes."""

    width: int
    height: int
    data: bytes
    row_order: RowOrder = RowOrder.BOTTOM_UP
    color_space: ColorSpace = ColorSpace.SRGB

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"frame buffer size must be positive, got {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.data) != expected:
            raise ValueError(
                f"frame buffer is {len(self.data)} bytes, expected {expected}"
            )

    def as_array(self) -> np.ndarray:
        """Read-only (height, width, 4) uint8 view in stored row order."""
        return np.frombuffer(self.data, dtype=np.uint8).reshape(self.height, self.width, 4)
