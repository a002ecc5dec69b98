"""STL (triangle-mesh) decoding.

Binary layout: 80-byte header, little-endian uint32 facet count, then one
50-byte record per facet (normal, three vertices, uint16 attribute).
A file whose size matches that layout is binary. Otherwise text starting
with "solid" is read as ASCII STL, and anything else is read as binary
when it holds at least the announced facets (trailing bytes ignored).
"""

from __future__ import annotations

import logging
import re
import struct

import numpy as np

from render3d.errors import ParseError
from render3d.scene_graph import DEFAULT_STL_MATERIAL, Geometry, MeshPart, SceneNode

logger = logging.getLogger("render3d.formats.stl")

HEADER_SIZE = 80
COUNT_SIZE = 4
FACET_DTYPE = np.dtype([
    ("normal", "<f4", (3,)),
    ("vertices", "<f4", (3, 3)),
    ("attribute", "<u2"),
])

_FLOAT = r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?"
_FACET_RE = re.compile(
    rf"facet\s+normal\s+({_FLOAT})\s+({_FLOAT})\s+({_FLOAT})\s+"
    rf"outer\s+loop\s+"
    rf"vertex\s+({_FLOAT})\s+({_FLOAT})\s+({_FLOAT})\s+"
    rf"vertex\s+({_FLOAT})\s+({_FLOAT})\s+({_FLOAT})\s+"
    rf"vertex\s+({_FLOAT})\s+({_FLOAT})\s+({_FLOAT})\s+"
    rf"endloop\s+endfacet",
    re.IGNORECASE,
)


def _binary_size(data: bytes):
    """Byte size the binary header announces, or None when there is no header."""
    if len(data) < HEADER_SIZE + COUNT_SIZE:
        return None
    (count,) = struct.unpack_from("<I", data, HEADER_SIZE)
    return HEADER_SIZE + COUNT_SIZE + count * FACET_DTYPE.itemsize


def _looks_ascii(data: bytes) -> bool:
    return data[:512].lstrip().lower().startswith(b"solid")


def is_binary_stl(data: bytes) -> bool:
    size = _binary_size(data)
    if size is None:
        return False
    if len(data) == size:
        return True
    return not _looks_ascii(data) and len(data) >= size


def parse_binary(data: bytes):
    """Return (normals (N,3), vertices (N,3,3)) from a binary STL."""
    (count,) = struct.unpack_from("<I", data, HEADER_SIZE)
    facets = np.frombuffer(data, dtype=FACET_DTYPE, count=count, offset=HEADER_SIZE + COUNT_SIZE)
    return facets["normal"], facets["vertices"]


def parse_ascii(data: bytes):
    """Return (normals (N,3), vertices (N,3,3)) from an ASCII STL."""
    try:
        text = data.decode("ascii")
    except UnicodeDecodeError as exc:
        raise ParseError("STL is neither valid binary nor ASCII") from exc
    if not text.lstrip().lower().startswith("solid"):
        raise ParseError("STL is neither valid binary nor ASCII")
    rows = [[float(v) for v in m.groups()] for m in _FACET_RE.finditer(text)]
    if not rows and "facet" in text.lower():
        raise ParseError("ASCII STL contains malformed facets")
    table = np.asarray(rows, dtype=np.float32).reshape(-1, 12)
    return table[:, 0:3], table[:, 3:12].reshape(-1, 3, 3)


def _facet_normals(normals: np.ndarray, vertices: np.ndarray) -> np.ndarray:
    """Keep file normals, recomputing zero-length ones from the winding."""
    normals = np.array(normals, dtype=np.float32)
    lengths = np.linalg.norm(normals, axis=1)
    bad = lengths < 1e-12
    if np.any(bad):
        v = vertices[bad]
        computed = np.cross(v[:, 1] - v[:, 0], v[:, 2] - v[:, 0])
        norms = np.linalg.norm(computed, axis=1, keepdims=True)
        norms[norms == 0.0] = 1.0
        normals[bad] = computed / norms
        logger.debug("Recomputed %d zero-length facet normal(s)", int(bad.sum()))
    return normals


def decode_stl(data: bytes, name: str = "stl_mesh") -> SceneNode:
    """Decode STL bytes into a single mesh node with the default material."""
    size = _binary_size(data)
    if is_binary_stl(data):
        if len(data) > size:
            logger.debug("Ignoring %d trailing byte(s) after binary STL facets", len(data) - size)
        normals, vertices = parse_binary(data)
        variant = "binary"
    elif size is not None and not _looks_ascii(data):
        raise ParseError(f"binary STL truncated: header announces {size} bytes, got {len(data)}")
    else:
        normals, vertices = parse_ascii(data)
        variant = "ascii"

    count = len(vertices)
    normals = _facet_normals(normals, vertices)
    geometry = Geometry(
        positions=vertices.reshape(-1, 3),
        indices=np.arange(count * 3, dtype=np.uint32),
        normals=np.repeat(normals, 3, axis=0),
    )
    logger.info("Decoded %s STL: %d facet(s)", variant, count)
    return SceneNode(name=name, mesh=MeshPart(geometry, DEFAULT_STL_MATERIAL))
