"""Camera framing from the world-space bounding box of the assembled scene."""

from __future__ import annotations

import logging
import math
from typing import Iterator, Optional, Tuple

import numpy as np

from render3d.config import RenderSettings
from render3d.scene_graph import Camera, SceneNode

logger = logging.getLogger("render3d.framing")

Bounds = Tuple[np.ndarray, np.ndarray]

# Below this extent the box is treated as a point.
DEGENERATE_EXTENT = 1e-9


def iter_world_matrices(
    node: SceneNode,
    parent: Optional[np.ndarray] = None,
) -> Iterator[Tuple[SceneNode, np.ndarray]]:
    """Yield ``(node, world_matrix)`` depth-first; matrices are 4x4 row-major numpy."""
    local = np.array(node.local_matrix(), dtype=np.float64)
    world = local if parent is None else parent @ local
    yield node, world
    for child in node.children:
        yield from iter_world_matrices(child, world)


def scene_bounds(root: SceneNode) -> Optional[Bounds]:
    """World-space (min, max) over every mesh vertex, or None without geometry."""
    lo = np.full(3, np.inf)
    hi = np.full(3, -np.inf)
    found = False
    for node, world in iter_world_matrices(root):
        if node.mesh is None or not node.mesh.geometry.vertex_count:
            continue
        positions = node.mesh.geometry.positions.astype(np.float64)
        homogeneous = np.hstack([positions, np.ones((len(positions), 1))])
        transformed = homogeneous @ world.T
        lo = np.minimum(lo, transformed[:, :3].min(axis=0))
        hi = np.maximum(hi, transformed[:, :3].max(axis=0))
        found = True
    if not found:
        return None
    return lo, hi


def fit_distance(max_dim: float, fov_deg: float, padding: float) -> float:
    """Distance at which a box of ``max_dim`` fills the vertical FOV, times padding."""
    fov = math.radians(fov_deg)
    return (max_dim / 2.0) / math.tan(fov / 2.0) * padding


def frame_camera(
    bounds: Optional[Bounds],
    width: int,
    height: int,
    settings: Optional[RenderSettings] = None,
) -> Camera:
    """Place a camera on +Z of the box centre, looking at it.

    Empty or degenerate boxes fall back to ``settings.min_camera_distance``
    from the box centre (or the origin when there is no box).
    """
    settings = settings or RenderSettings()
    if width <= 0 or height <= 0:
        raise ValueError(f"image size must be positive, got {width}x{height}")

    if bounds is None:
        center = np.zeros(3)
        max_dim = 0.0
    else:
        lo, hi = (np.asarray(b, dtype=np.float64) for b in bounds)
        center = (lo + hi) / 2.0
        max_dim = float(np.max(hi - lo))

    distance = fit_distance(max_dim, settings.fov_deg, settings.padding)
    if bounds is None or max_dim <= DEGENERATE_EXTENT or not math.isfinite(distance):
        logger.warning(
            "Scene bounds are empty or degenerate (max extent %.3g); "
            "using default camera distance %.2f",
            max_dim, settings.min_camera_distance,
        )
        distance = settings.min_camera_distance

    near = min(settings.near, distance * 0.01)
    far = max(settings.far, distance + 2.0 * max_dim)

    cx, cy, cz = (float(v) for v in center)
    camera = Camera(
        position=(cx, cy, cz + distance),
        target=(cx, cy, cz),
        fov_deg=settings.fov_deg,
        aspect=width / height,
        near=near,
        far=far,
    )
    logger.info(
        "Framed camera: center=(%.3f, %.3f, %.3f) extent=%.3f distance=%.3f clip=[%.4g, %.4g]",
        cx, cy, cz, max_dim, distance, near, far,
    )
    return camera
