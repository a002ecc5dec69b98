"""Scene assembly step: lighting rig and orientation correction."""

from __future__ import annotations

from typing import Any, Dict

from render3d.assembly import assemble_scene
from render3d.pipeline import CompletedState, PipelineStep


class AssembleSceneStep(PipelineStep):
    """Turn the decoded model into a lit, correctly oriented scene."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(
            name="assemble_scene",
            requires=["decoded_model"],
            provides=["assembled_scene"],
            **kwargs,
        )

    def run(self, context: Dict[str, Any]) -> CompletedState:
        assembled = assemble_scene(context["decoded_model"])
        context["assembled_scene"] = assembled
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=0.0,
            provides=["assembled_scene"],
            outputs={
                "lights": [light.kind.value for light in assembled.lights],
                "mesh_nodes": len(assembled.root.mesh_nodes()),
            },
        )
