"""Rasterize step: build the scene in Blender and capture one frame."""

from __future__ import annotations

import logging
from typing import Any, Dict

from render3d.config import RenderSettings
from render3d.pipeline import CompletedState
from render3d.pipeline_steps.blender_step import BlenderStep

logger = logging.getLogger("render3d.steps.render")


class RasterizeStep(BlenderStep):
    """Render the framed scene off-screen into a FrameBuffer.

    The frame buffer is sRGB with Blender's bottom-up row order; the
    encoder takes care of the flip.
    """

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("save_scene", True)
        super().__init__(
            name="rasterize",
            requires=["assembled_scene", "camera", "width", "height"],
            provides=["frame_buffer"],
            **kwargs,
        )

    def execute(self, context: Dict[str, Any]) -> CompletedState:
        import bpy

        from render3d.bpy.camera import get_camera_intrinsics
        from render3d.bpy.render import configure_engine, render_frame_buffer
        from render3d.bpy.scene import build_scene

        settings = context.get("settings") or RenderSettings()
        width, height = context["width"], context["height"]

        stats = build_scene(context["assembled_scene"], context["camera"], settings)
        engine = configure_engine(settings.engine, settings.samples, (width, height))
        intrinsics = get_camera_intrinsics(bpy.context.scene.camera)
        frame = render_frame_buffer(width, height, settings.background)

        context["frame_buffer"] = frame
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=0.0,
            provides=["frame_buffer"],
            outputs={"engine": engine, "camera": intrinsics, **stats},
        )

    def rollback(self, context: Dict[str, Any]) -> None:
        context.pop("frame_buffer", None)
