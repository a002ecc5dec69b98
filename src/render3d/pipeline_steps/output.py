"""Output step: encode the frame buffer and write the PNG."""

from __future__ import annotations

from typing import Any, Dict

from render3d.encoding import write_png
from render3d.pipeline import CompletedState, PipelineStep


class EncodeImageStep(PipelineStep):
    """Write ``context["frame_buffer"]`` to ``context["output_path"]`` as PNG."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(
            name="encode_image",
            requires=["frame_buffer", "output_path"],
            provides=["output_written"],
            **kwargs,
        )

    def run(self, context: Dict[str, Any]) -> CompletedState:
        frame = context["frame_buffer"]
        size = write_png(frame, context["output_path"])
        context["output_written"] = context["output_path"]
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=0.0,
            provides=["output_written"],
            outputs={"path": context["output_path"], "size_bytes": size},
        )
