"""Mesh objects built from decoded scene-graph geometry."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import bpy
import numpy as np
from mathutils import Matrix

logger = logging.getLogger("render3d.bpy.mesh")


def create_mesh_data(name: str, geometry: Any) -> bpy.types.Mesh:
    """Create a Blender mesh from an indexed triangle list.

    UVs are written per loop with V flipped (glTF V runs top to bottom,
    Blender's bottom to top). Vertex normals become custom split normals.
    """
    mesh = bpy.data.meshes.new(name)
    faces = geometry.indices.reshape(-1, 3)
    mesh.from_pydata(geometry.positions.tolist(), [], faces.tolist())
    mesh.validate()
    mesh.update()

    if geometry.uvs is not None and len(mesh.loops):
        loop_verts = np.empty(len(mesh.loops), dtype=np.int32)
        mesh.loops.foreach_get("vertex_index", loop_verts)
        uv = np.array(geometry.uvs, dtype=np.float32)[loop_verts]
        uv[:, 1] = 1.0 - uv[:, 1]
        layer = mesh.uv_layers.new(name="UVMap")
        layer.data.foreach_set("uv", uv.ravel())

    if geometry.normals is not None and len(mesh.vertices) == geometry.vertex_count:
        if hasattr(mesh, "use_auto_smooth"):
            mesh.use_auto_smooth = True
        mesh.polygons.foreach_set("use_smooth", [True] * len(mesh.polygons))
        mesh.normals_split_custom_set_from_vertices(geometry.normals.tolist())

    mesh.update()
    logger.debug(
        "Mesh '%s': %d verts, %d faces", name, len(mesh.vertices), len(mesh.polygons),
    )
    return mesh


def create_node_objects(
    root: Any,
    collection: bpy.types.Collection,
    conversion: Any,
) -> List[bpy.types.Object]:
    """Mirror the scene-graph tree as parented Blender objects.

    Transform-only nodes become empties. The root's world matrix is
    pre-multiplied by ``conversion``; children keep their local transforms.
    """
    from render3d.bpy.materials import MaterialCache

    materials = MaterialCache()
    created: List[bpy.types.Object] = []

    def visit(node: Any, parent: Optional[bpy.types.Object]) -> None:
        name = node.name or "node"
        if node.mesh is not None:
            mesh = create_mesh_data(f"{name}_mesh", node.mesh.geometry)
            mesh.materials.append(materials.get(node.mesh.material))
            obj = bpy.data.objects.new(name, mesh)
            if hasattr(obj, "visible_shadow"):
                obj.visible_shadow = bool(node.cast_shadow)
        else:
            obj = bpy.data.objects.new(name, None)
            obj.empty_display_type = "PLAIN_AXES"
        collection.objects.link(obj)

        local = Matrix(node.local_matrix().tolist())
        if parent is None:
            obj.matrix_world = conversion @ local
        else:
            obj.parent = parent
            obj.matrix_basis = local
        created.append(obj)
        for child in node.children:
            visit(child, obj)

    visit(root, None)
    counts: Dict[str, int] = {}
    for obj in created:
        counts[obj.type] = counts.get(obj.type, 0) + 1
    logger.info("Created %d object(s) from scene graph: %s", len(created), counts)
    return created
