"""Blender (bpy) helpers that realize a framed scene off-screen.

Modules:
    scene      — reset, purge, Y-up to Z-up conversion, build_scene, snapshots
    mesh       — mesh data and object hierarchy from scene-graph nodes
    materials  — Principled BSDF materials, packed image textures
    lights     — world ambient, SUN and POINT lamps
    camera     — render camera from a framed Camera
    render     — engine selection, colour management, frame capture

Every module imports ``bpy`` at top level; import them lazily from code
that must also run outside Blender.
"""

__all__ = [
    "scene",
    "mesh",
    "materials",
    "lights",
    "camera",
    "render",
]
