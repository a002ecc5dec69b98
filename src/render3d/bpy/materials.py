"""Principled BSDF materials and packed image textures."""

from __future__ import annotations

import logging
from typing import Any, Dict

import bpy
import numpy as np

logger = logging.getLogger("render3d.bpy.materials")

WHITE = (1.0, 1.0, 1.0, 1.0)


def create_image(name: str, texture: Any) -> bpy.types.Image:
    """Create a packed Blender image from a decoded RGBA8 texture.

    Texture rows run top to bottom; Blender images store them bottom up.
    """
    img = bpy.data.images.new(name, width=texture.width, height=texture.height, alpha=True)
    pixels = np.frombuffer(texture.pixels, dtype=np.uint8).reshape(
        texture.height, texture.width, 4,
    )
    img.pixels.foreach_set((pixels[::-1].astype(np.float32) / 255.0).ravel())
    img.pack()
    return img


def _multiply_node(nodes: Any, links: Any, color_socket: Any, base_color: Any) -> Any:
    """Multiply a texture colour by a constant; returns the output socket."""
    try:
        mix = nodes.new("ShaderNodeMix")
        mix.data_type = "RGBA"
        mix.blend_type = "MULTIPLY"
        mix.inputs[0].default_value = 1.0
        links.new(color_socket, mix.inputs[6])
        mix.inputs[7].default_value = base_color
        return mix.outputs[2]
    except RuntimeError:
        # Blender < 3.4
        mix = nodes.new("ShaderNodeMixRGB")
        mix.blend_type = "MULTIPLY"
        mix.inputs["Fac"].default_value = 1.0
        links.new(color_socket, mix.inputs["Color1"])
        mix.inputs["Color2"].default_value = base_color
        return mix.outputs["Color"]


def create_material(material: Any) -> bpy.types.Material:
    """Build a node-based Principled BSDF material from a scene-graph Material."""
    mat = bpy.data.materials.new(material.name or "material")
    mat.use_nodes = True
    nodes = mat.node_tree.nodes
    links = mat.node_tree.links
    bsdf = nodes.get("Principled BSDF") or nodes.new("ShaderNodeBsdfPrincipled")

    base_color = tuple(material.base_color)
    bsdf.inputs["Base Color"].default_value = base_color
    bsdf.inputs["Metallic"].default_value = material.metalness
    bsdf.inputs["Roughness"].default_value = material.roughness
    if base_color[3] < 1.0:
        bsdf.inputs["Alpha"].default_value = base_color[3]
        if hasattr(mat, "blend_method"):
            mat.blend_method = "BLEND"
    mat.use_backface_culling = not material.double_sided

    if material.texture is not None:
        tex_node = nodes.new("ShaderNodeTexImage")
        tex_node.image = create_image(f"{mat.name}_base_color", material.texture)
        color = tex_node.outputs["Color"]
        if base_color != WHITE:
            color = _multiply_node(nodes, links, color, base_color)
        links.new(color, bsdf.inputs["Base Color"])

    logger.debug(
        "Material '%s': metallic=%.2f roughness=%.2f textured=%s",
        mat.name, material.metalness, material.roughness, material.texture is not None,
    )
    return mat


class MaterialCache:
    """One Blender material per distinct scene-graph Material object."""

    def __init__(self) -> None:
        self._materials: Dict[int, bpy.types.Material] = {}

    def get(self, material: Any) -> bpy.types.Material:
        key = id(material)
        if key not in self._materials:
            self._materials[key] = create_material(material)
        return self._materials[key]

    def __len__(self) -> int:
        return len(self._materials)
