#!/usr/bin/env python
"""render_task.py

Pipeline-driven model renderer. Decodes an STL or glTF/GLB model, lights and
frames it, renders it off-screen with Blender and writes one PNG.

  render3d model.glb 800x600 out.png
  python -m render3d model.stl 400x300 out.png --engine cycles --samples 16
  blender --background --python-expr "import render3d.render_task as t; t.main()" \\
      -- model.glb 800x600 out.png
"""

from __future__ import annotations

import argparse
import errno
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from render3d.config import ENGINES, RenderSettings
from render3d.errors import RenderError
from render3d.formats.sources import ByteSource
from render3d.pipeline import CompletedState, ExitCode, Pipeline, exit_code_from
from render3d.pipeline_steps.camera import FrameCameraStep
from render3d.pipeline_steps.io import DecodeModelStep, ReadModelStep
from render3d.pipeline_steps.output import EncodeImageStep
from render3d.pipeline_steps.render import RasterizeStep
from render3d.pipeline_steps.scene import AssembleSceneStep
from render3d.scene_graph import Camera

logger = logging.getLogger("render3d.render_task")

_DIMENSIONS_RE = re.compile(r"^(\d+)x(\d+)$")


# ---------------------------------------------------------------------------
# Composed pipeline construction
# ---------------------------------------------------------------------------

def build_pipeline() -> Pipeline:
    """Build the single-model render pipeline."""
    decode = Pipeline(
        name="decode", version="1.0",
        steps=[ReadModelStep(), DecodeModelStep()],
    )
    scene = Pipeline(
        name="scene", version="1.0",
        steps=[AssembleSceneStep(), FrameCameraStep()],
    )
    output = Pipeline(
        name="output", version="1.0",
        steps=[RasterizeStep(), EncodeImageStep()],
    )
    return Pipeline(name="render3d", version="1.0", steps=[decode, scene, output])


@dataclass
class RenderReport:
    """Summary of a successful render."""

    output_path: str
    width: int
    height: int
    model_format: str
    camera: Camera
    warnings: List[RenderError] = field(default_factory=list)
    step_states: Dict[str, Any] = field(default_factory=dict)
    duration_s: float = 0.0


def run_pipeline(
    model_path: str,
    width: int,
    height: int,
    output_path: str,
    settings: Optional[RenderSettings] = None,
    source: Optional[ByteSource] = None,
    snapshot_dir: Optional[str] = None,
) -> Tuple[CompletedState, Dict[str, Any]]:
    """Run the render pipeline; returns the final state and the context."""
    context: Dict[str, Any] = {
        "model_path": model_path,
        "width": width,
        "height": height,
        "output_path": os.path.abspath(output_path),
        "settings": settings or RenderSettings(),
    }
    if source is not None:
        context["byte_source"] = source
    if snapshot_dir:
        context["snapshot_dir"] = snapshot_dir
    return build_pipeline().run(context), context


def check_model_exists(model_path: str) -> None:
    if not os.path.isfile(model_path):
        raise FileNotFoundError(errno.ENOENT, "Model file not found", model_path)


def render_model(
    model_path: str,
    width: int,
    height: int,
    output_path: str,
    settings: Optional[RenderSettings] = None,
    source: Optional[ByteSource] = None,
    snapshot_dir: Optional[str] = None,
) -> RenderReport:
    """Render ``model_path`` to a ``width`` x ``height`` PNG at ``output_path``.

    Raises:
        FileNotFoundError: The model file does not exist (local files only).
        UnsupportedFormatError, ParseError, ContextCreationError, EncodeError:
            The recorded pipeline failure, re-raised as is.
        RenderError: Any other pipeline failure.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"width and height must be positive, got {width}x{height}")
    if source is None:
        check_model_exists(model_path)

    result, context = run_pipeline(
        model_path, width, height, output_path,
        settings=settings, source=source, snapshot_dir=snapshot_dir,
    )
    if not result.success:
        errors = context.get("errors") or []
        if errors:
            raise errors[-1]
        raise RenderError((result.error or {}).get("message", "render failed"))

    return RenderReport(
        output_path=context["output_written"],
        width=width,
        height=height,
        model_format=context["model_format"].value,
        camera=context["camera"],
        warnings=list(context.get("warnings", [])),
        step_states=context.get("step_states", {}),
        duration_s=result.duration_s,
    )


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_dimensions(value: str) -> Tuple[int, int]:
    """Parse ``WIDTHxHEIGHT`` into two positive ints (argparse ``type``)."""
    match = _DIMENSIONS_RE.match(value)
    if not match:
        raise argparse.ArgumentTypeError(
            f"invalid dimensions '{value}': expected WIDTHxHEIGHT, e.g. 800x600"
        )
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise argparse.ArgumentTypeError(
            f"invalid dimensions '{value}': width and height must be positive"
        )
    return width, height


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="render3d",
        description="Render an STL or glTF/GLB model to a PNG image without a display.",
    )
    parser.add_argument("model", help="Input model file (.stl, .glb, .gltf)")
    parser.add_argument("size", type=parse_dimensions, metavar="WIDTHxHEIGHT",
                        help="Output image size in pixels, e.g. 800x600")
    parser.add_argument("output", help="Output PNG path")
    parser.add_argument("--engine", choices=ENGINES, default=None,
                        help="Render engine (default: eevee)")
    parser.add_argument("--samples", type=int, default=None,
                        help="Render samples (default: 32)")
    parser.add_argument("--background", default=None, metavar="RRGGBB",
                        help="Background colour as hex (default: 000000)")
    parser.add_argument("--fov", dest="fov_deg", type=float, default=None,
                        help="Vertical field of view in degrees (default: 45)")
    parser.add_argument("--padding", type=float, default=None,
                        help="Camera distance multiplier (default: 1.5)")
    parser.add_argument("--save-blend", dest="snapshot_dir", default=None, metavar="DIR",
                        help="Save a .blend snapshot of the built scene into DIR")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Warnings and errors only")
    return parser


def _script_args(argv: Optional[List[str]]) -> List[str]:
    """CLI arguments, taking only those after ``--`` when run inside Blender."""
    if argv is None:
        argv = sys.argv[1:]
    if "--" in argv:
        argv = argv[argv.index("--") + 1:]
    return list(argv)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(_script_args(argv))

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s", force=True)

    try:
        settings = RenderSettings.from_args(args)
    except ValueError as exc:
        parser.error(str(exc))

    model_path = os.path.abspath(args.model)
    try:
        check_model_exists(model_path)
    except FileNotFoundError:
        logger.error("Input not found: %s", model_path)
        return int(ExitCode.FILE_NOT_FOUND)

    width, height = args.size
    result, context = run_pipeline(
        model_path, width, height, args.output,
        settings=settings, snapshot_dir=args.snapshot_dir,
    )
    if result.success:
        logger.info(
            "Rendered %s -> %s (%dx%d, %d warning(s), %.2fs)",
            model_path, context["output_written"], width, height,
            len(context.get("warnings", [])), result.duration_s,
        )
    return int(exit_code_from(result))


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
