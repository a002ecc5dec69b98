"""Scene lifecycle and scene-graph to Blender conversion.

The in-memory scene graph is Y-up (glTF convention). Everything placed in
Blender goes through one axis conversion matrix to Blender's Z-up world.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import bpy
from bpy_extras.io_utils import axis_conversion

logger = logging.getLogger("render3d.bpy.scene")

SCENE_COLLECTION_NAME = "render3d"

# Datablock kinds a render creates; anything unused is dropped between renders.
RENDER_DATABLOCKS = ("meshes", "materials", "images", "cameras", "lights", "worlds")


def reset_scene() -> None:
    """Empty the file and drop datablocks left over from a previous render."""
    bpy.ops.wm.read_homefile(use_empty=True)
    removed = purge_orphan_data()
    logger.info("Scene reset (%d orphan datablock(s) removed)", removed)


def purge_orphan_data(kinds=RENDER_DATABLOCKS) -> int:
    """Remove datablocks with no users; returns how many were removed."""
    removed = 0
    for kind in kinds:
        blocks = getattr(bpy.data, kind, None)
        if blocks is None:
            continue
        for block in [b for b in blocks if b.users == 0]:
            blocks.remove(block)
            removed += 1
    return removed


def y_up_to_z_up():
    """4x4 matrix taking Y-up / -Z-forward coordinates into Blender's Z-up world."""
    return axis_conversion(from_forward="-Z", from_up="Y").to_4x4()


def get_collection(name: str = SCENE_COLLECTION_NAME) -> bpy.types.Collection:
    """Get or create a collection linked to the active scene."""
    scene = bpy.context.scene
    col = bpy.data.collections.get(name)
    if col is None:
        col = bpy.data.collections.new(name)
    if col.name not in scene.collection.children:
        scene.collection.children.link(col)
    return col


def build_scene(assembled: Any, camera: Any, settings: Any) -> Dict[str, Any]:
    """Reset Blender and recreate the assembled scene, its lights and camera.

    Args:
        assembled: ``AssembledScene`` from the assembler.
        camera:    Framed ``Camera``.
        settings:  ``RenderSettings``.

    Returns:
        Counts of the Blender objects created.
    """
    from render3d.bpy.camera import create_camera
    from render3d.bpy.lights import create_lights
    from render3d.bpy.mesh import create_node_objects

    reset_scene()
    collection = get_collection()
    conversion = y_up_to_z_up()

    objects = create_node_objects(assembled.root, collection, conversion)
    lights = create_lights(assembled.lights, collection, conversion, settings)
    create_camera(camera, collection, conversion)

    stats = {
        "objects": len(objects),
        "meshes": sum(1 for o in objects if o.type == "MESH"),
        "lights": len(lights),
    }
    logger.info(
        "Built Blender scene: %d object(s), %d mesh(es), %d light(s)",
        stats["objects"], stats["meshes"], stats["lights"],
    )
    return stats


def save_snapshot(directory: str, name: str) -> Optional[str]:
    """Save a copy of the current scene as ``<directory>/<name>.blend``."""
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(os.path.abspath(directory), f"{name}.blend")
    bpy.ops.wm.save_as_mainfile(filepath=path, copy=True)
    logger.info("Saved scene snapshot: %s", path)
    return path
