"""Render camera creation from a framed scene-graph Camera."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict

import bpy
from mathutils import Matrix, Vector

logger = logging.getLogger("render3d.bpy.camera")


def look_at_matrix(camera: Any) -> Matrix:
    """Y-up world transform aiming the camera's -Z at its target, +Y up."""
    position = Vector(camera.position)
    rot = (Vector(camera.target) - position).to_track_quat("-Z", "Y")
    return Matrix.Translation(position) @ rot.to_matrix().to_4x4()


def create_camera(
    camera: Any,
    collection: bpy.types.Collection,
    conversion: Matrix,
    name: str = "render3d_camera",
) -> bpy.types.Object:
    """Create the scene camera with a vertical field of view and clip planes.

    With a vertical sensor fit the horizontal field of view follows the
    render aspect ratio.

    Returns:
        The new camera object, also set as the scene camera.
    """
    cam_data = bpy.data.cameras.new(name)
    cam_data.sensor_fit = "VERTICAL"
    cam_data.angle_y = math.radians(camera.fov_deg)
    cam_data.clip_start = camera.near
    cam_data.clip_end = camera.far

    cam_obj = bpy.data.objects.new(name, cam_data)
    collection.objects.link(cam_obj)
    cam_obj.matrix_world = conversion @ look_at_matrix(camera)
    bpy.context.scene.camera = cam_obj

    logger.info(
        "Created camera '%s' at %s looking at %s (fov_y=%.1f deg)",
        name, tuple(round(v, 4) for v in camera.position),
        tuple(round(v, 4) for v in camera.target), camera.fov_deg,
    )
    return cam_obj


def get_camera_intrinsics(cam_obj: bpy.types.Object) -> Dict[str, Any]:
    """Camera parameters as a JSON-serializable dict."""
    scene = bpy.context.scene
    cam_data = cam_obj.data
    return {
        "angle_y_deg": round(math.degrees(cam_data.angle_y), 4),
        "position": [round(v, 4) for v in cam_obj.matrix_world.translation],
        "clip_start": cam_data.clip_start,
        "clip_end": cam_data.clip_end,
        "resolution": [scene.render.resolution_x, scene.render.resolution_y],
    }
