"""I/O steps: read model bytes and decode them into a scene graph."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict

from render3d.formats import decode_model, detect_format
from render3d.formats.sources import LocalByteSource
from render3d.pipeline import CompletedState, PipelineStep, _short_signature, record_warnings

logger = logging.getLogger("render3d.steps.io")


class ReadModelStep(PipelineStep):
    """Detect the model format from its extension, then read the whole file.

    Unsupported extensions fail before any bytes are read.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(
            name="read_model",
            requires=["model_path"],
            provides=["model_format", "model_bytes"],
            **kwargs,
        )

    def run(self, context: Dict[str, Any]) -> CompletedState:
        path = context["model_path"]
        fmt = detect_format(path)
        source = context.get("byte_source") or LocalByteSource()
        data = source.read_bytes(path)

        context["model_format"] = fmt
        context["model_bytes"] = data
        logger.info("Read %s model '%s' (%d bytes)", fmt.value, path, len(data))
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=0.0,
            provides=["model_format", "model_bytes"],
            outputs={"format": fmt.value, "size_bytes": len(data)},
        )


class DecodeModelStep(PipelineStep):
    """Parse model bytes into a scene graph with all textures resolved."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(
            name="decode_model",
            requires=["model_bytes", "model_format"],
            provides=["decoded_model"],
            **kwargs,
        )

    def run(self, context: Dict[str, Any]) -> CompletedState:
        path = context.get("model_path", "")
        settings = context.get("settings")
        decoded = decode_model(
            context["model_bytes"],
            context["model_format"],
            base_dir=os.path.dirname(os.path.abspath(path)) if path else ".",
            source=context.get("byte_source"),
            texture_workers=settings.texture_workers if settings else 4,
            name=os.path.splitext(os.path.basename(path))[0] or "model",
        )
        record_warnings(context, decoded.warnings)
        context["decoded_model"] = decoded

        meshes = decoded.root.mesh_nodes()
        triangles = sum(n.mesh.geometry.triangle_count for n in meshes)
        logger.info(
            "Decoded %d mesh node(s), %d triangle(s), %d texture(s), %d warning(s)",
            len(meshes), triangles, len(decoded.textures), len(decoded.warnings),
        )
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=0.0,
            provides=["decoded_model"],
            outputs={
                "mesh_nodes": len(meshes),
                "triangles": triangles,
                "textures": len(decoded.textures),
                "warnings": [str(w) for w in decoded.warnings],
            },
            signature=_short_signature({"meshes": len(meshes), "triangles": triangles}),
        )
