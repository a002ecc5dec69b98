"""Model decoding: file format detection and per-format decoders.

Modules:
    sources   — ByteSource (file access), BlobTable (internal references)
    stl       — binary/ASCII STL triangle meshes
    gltf      — glTF 2.0 JSON and GLB scene packages
    textures  — in-memory image decoding on a thread pool
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from render3d.errors import NonFatalRenderError, UnsupportedFormatError
from render3d.formats.sources import ByteSource, LocalByteSource
from render3d.scene_graph import SceneNode, Texture

logger = logging.getLogger("render3d.formats")


class ModelFormat(str, enum.Enum):
    TRIANGLE_MESH = "triangle-mesh"
    SCENE_PACKAGE = "scene-package"


EXTENSIONS = {
    ".stl": ModelFormat.TRIANGLE_MESH,
    ".glb": ModelFormat.SCENE_PACKAGE,
    ".gltf": ModelFormat.SCENE_PACKAGE,
}


@dataclass
class DecodedModel:
    """Everything the decoder produced for one model file.

    ``warnings`` holds one non-fatal error per reference that could not be
    resolved; every material texture is either set or None.
    """

    root: SceneNode
    fmt: ModelFormat
    textures: List[Texture] = field(default_factory=list)
    warnings: List[NonFatalRenderError] = field(default_factory=list)


def detect_format(path: str) -> ModelFormat:
    """Map a model path to its format by extension.

    Raises:
        UnsupportedFormatError: For anything other than .stl/.glb/.gltf.
    """
    ext = os.path.splitext(path)[1].lower()
    try:
        return EXTENSIONS[ext]
    except KeyError:
        raise UnsupportedFormatError(ext) from None


def decode_model(
    data: bytes,
    fmt: ModelFormat,
    *,
    base_dir: str = ".",
    source: Optional[ByteSource] = None,
    texture_workers: int = 4,
    name: str = "model",
) -> DecodedModel:
    """Decode model bytes of a known format.

    Args:
        data:            Complete file contents.
        fmt:             Format from :func:`detect_format`.
        base_dir:        Directory that relative URIs resolve against.
        source:          Byte reader for external resources.
        texture_workers: Thread pool size for image decoding.
        name:            Name given to the STL mesh node.

    Raises:
        ParseError: If the bytes or document are structurally invalid.
    """
    from render3d.formats.gltf import decode_gltf
    from render3d.formats.stl import decode_stl

    source = source or LocalByteSource()
    if fmt is ModelFormat.TRIANGLE_MESH:
        return DecodedModel(root=decode_stl(data, name=name), fmt=fmt)
    if fmt is ModelFormat.SCENE_PACKAGE:
        result = decode_gltf(data, base_dir, source, texture_workers=texture_workers)
        return DecodedModel(
            root=result.root, fmt=fmt, textures=result.textures, warnings=result.warnings,
        )
    raise UnsupportedFormatError(str(fmt))


__all__ = [
    "DecodedModel",
    "ModelFormat",
    "decode_model",
    "detect_format",
]
