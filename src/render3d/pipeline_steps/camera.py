"""Camera framing step."""

from __future__ import annotations

from typing import Any, Dict

from render3d.framing import frame_camera, scene_bounds
from render3d.pipeline import CompletedState, PipelineStep


class FrameCameraStep(PipelineStep):
    """Fit a camera to the world-space bounds of the assembled scene."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(
            name="frame_camera",
            requires=["assembled_scene", "width", "height"],
            provides=["camera", "scene_bounds"],
            **kwargs,
        )

    def run(self, context: Dict[str, Any]) -> CompletedState:
        bounds = scene_bounds(context["assembled_scene"].root)
        camera = frame_camera(
            bounds, context["width"], context["height"], context.get("settings"),
        )
        context["scene_bounds"] = bounds
        context["camera"] = camera
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=0.0,
            provides=["camera", "scene_bounds"],
            outputs={
                "position": [round(v, 6) for v in camera.position],
                "target": [round(v, 6) for v in camera.target],
                "distance": round(camera.distance, 6),
                "near": camera.near,
                "far": camera.far,
            },
        )
