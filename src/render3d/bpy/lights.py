"""World ambient lighting and shadow-casting lamps."""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, List

import bpy
from mathutils import Matrix, Vector

logger = logging.getLogger("render3d.bpy.lights")

ORIGIN = Vector((0.0, 0.0, 0.0))


def set_world_ambient(color: Any, strength: float) -> bpy.types.World:
    """Use a flat world background as the ambient term."""
    scene = bpy.context.scene
    world = scene.world
    if world is None:
        world = bpy.data.worlds.new("World")
        scene.world = world
    world.use_nodes = True
    bg = world.node_tree.nodes.get("Background")
    if bg is None:
        bg = world.node_tree.nodes.new("ShaderNodeBackground")
        output = world.node_tree.nodes.get("World Output") or world.node_tree.nodes.new(
            "ShaderNodeOutputWorld"
        )
        world.node_tree.links.new(bg.outputs["Background"], output.inputs["Surface"])
    bg.inputs["Color"].default_value = (*color, 1.0)
    bg.inputs["Strength"].default_value = strength
    logger.info("World ambient: color=%s strength=%.2f", tuple(color), strength)
    return world


def _aim_at_origin(position: Any) -> Matrix:
    """Local transform placing a lamp at ``position`` with -Z toward the origin."""
    location = Vector(position)
    rot = (ORIGIN - location).to_track_quat("-Z", "Y")
    return Matrix.Translation(location) @ rot.to_matrix().to_4x4()


def create_lamp(
    name: str,
    lamp_type: str,
    position: Any,
    color: Any,
    energy: float,
    cast_shadow: bool,
    soft_size: float,
    collection: bpy.types.Collection,
    conversion: Matrix,
) -> bpy.types.Object:
    """Create a SUN or POINT lamp aimed at the origin."""
    data = bpy.data.lights.new(name, type=lamp_type)
    data.color = tuple(color)
    data.energy = energy
    data.use_shadow = cast_shadow
    if lamp_type == "SUN":
        data.angle = soft_size
    else:
        data.shadow_soft_size = soft_size

    obj = bpy.data.objects.new(name, data)
    collection.objects.link(obj)
    obj.matrix_world = conversion @ _aim_at_origin(position)
    logger.info(
        "Lamp '%s' (%s): energy=%.2f at %s shadow=%s",
        name, lamp_type, energy, tuple(position), cast_shadow,
    )
    return obj


def create_lights(
    lights: Iterable[Any],
    collection: bpy.types.Collection,
    conversion: Matrix,
    settings: Any,
) -> List[bpy.types.Object]:
    """Realize the light rig: ambient on the world, lamps as objects.

    Point intensity is treated as luminous intensity and converted to
    radiant power over the full sphere (``intensity * 4 * pi``).
    """
    from render3d.scene_graph import LightKind

    created: List[bpy.types.Object] = []
    for index, light in enumerate(lights):
        if light.kind is LightKind.AMBIENT:
            set_world_ambient(light.color, light.intensity)
        elif light.kind is LightKind.DIRECTIONAL:
            created.append(create_lamp(
                f"key_light_{index}", "SUN", light.position, light.color,
                light.intensity, light.cast_shadow, settings.shadow_soft_size,
                collection, conversion,
            ))
        elif light.kind is LightKind.POINT:
            created.append(create_lamp(
                f"fill_light_{index}", "POINT", light.position, light.color,
                light.intensity * 4.0 * math.pi, light.cast_shadow,
                settings.shadow_soft_size, collection, conversion,
            ))

    eevee = getattr(bpy.context.scene, "eevee", None)
    if eevee is not None and hasattr(eevee, "use_soft_shadows"):
        eevee.use_soft_shadows = True
    return created
