"""Render engine configuration and off-screen frame capture."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import Sequence, Tuple

import bpy
import numpy as np

from render3d.errors import ContextCreationError
from render3d.scene_graph import ColorSpace, FrameBuffer, RowOrder

logger = logging.getLogger("render3d.bpy.render")

# Engine identifiers differ across Blender versions (4.2 ships EEVEE Next).
ENGINE_CANDIDATES = {
    "eevee": ("BLENDER_EEVEE_NEXT", "BLENDER_EEVEE"),
    "cycles": ("CYCLES",),
}


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------

def available_engines() -> Sequence[str]:
    scene = bpy.context.scene
    return scene.render.bl_rna.properties["engine"].enum_items.keys()


def resolve_engine(engine: str) -> str:
    """Map ``eevee``/``cycles`` to the identifier this Blender build knows.

    Raises:
        ContextCreationError: If no matching engine is available.
    """
    available = set(available_engines())
    for candidate in ENGINE_CANDIDATES.get(engine, ()):
        if candidate in available:
            return candidate
    raise ContextCreationError(
        f"Render engine '{engine}' is not available (have: {sorted(available)})"
    )


def configure_engine(engine: str, samples: int, resolution: Tuple[int, int]) -> str:
    """Select and configure the render engine; returns the engine identifier."""
    scene = bpy.context.scene
    identifier = resolve_engine(engine)
    try:
        scene.render.engine = identifier
    except TypeError as exc:
        raise ContextCreationError(f"Cannot select render engine {identifier}: {exc}") from exc

    if identifier == "CYCLES":
        scene.cycles.device = "CPU"
        scene.cycles.samples = samples
        scene.cycles.seed = 0
        if hasattr(scene.cycles, "use_denoising"):
            scene.cycles.use_denoising = False
    elif hasattr(scene.eevee, "taa_render_samples"):
        scene.eevee.taa_render_samples = samples

    scene.render.resolution_x = resolution[0]
    scene.render.resolution_y = resolution[1]
    scene.render.resolution_percentage = 100
    scene.render.film_transparent = True
    configure_color_management()
    logger.info(
        "Engine configured: %s, %dx%d, %d sample(s)",
        identifier, resolution[0], resolution[1], samples,
    )
    return identifier


def configure_color_management() -> None:
    """Standard view transform on an sRGB display: gamma-encoded 8-bit output."""
    scene = bpy.context.scene
    scene.display_settings.display_device = "sRGB"
    scene.view_settings.view_transform = "Standard"
    scene.view_settings.look = "None"
    scene.view_settings.exposure = 0.0
    scene.view_settings.gamma = 1.0


# ---------------------------------------------------------------------------
# Frame capture
# ---------------------------------------------------------------------------

def render_frame(output_path: str) -> str:
    """Render the current frame to an RGBA 8-bit PNG.

    Raises:
        ContextCreationError: If Blender cannot render or writes nothing.
    """
    scene = bpy.context.scene
    scene.render.image_settings.file_format = "PNG"
    scene.render.image_settings.color_mode = "RGBA"
    scene.render.image_settings.color_depth = "8"
    scene.render.filepath = output_path
    scene.render.use_file_extension = False
    try:
        bpy.ops.render.render(write_still=True)
    except RuntimeError as exc:
        raise ContextCreationError(f"Off-screen render failed: {exc}") from exc
    if not os.path.isfile(output_path):
        raise ContextCreationError(f"Render produced no output at '{output_path}'")
    logger.debug("Rendered frame to '%s'", output_path)
    return output_path


def read_image_pixels(path: str) -> Tuple[int, int, np.ndarray]:
    """Load an image through Blender; returns (width, height, float RGBA rows bottom-up)."""
    img = bpy.data.images.load(path, check_existing=False)
    try:
        width, height = img.size
        pixels = np.empty(width * height * 4, dtype=np.float32)
        img.pixels.foreach_get(pixels)
    finally:
        bpy.data.images.remove(img)
    return width, height, pixels.reshape(height, width, 4)


def composite_over(pixels: np.ndarray, background: Sequence[float]) -> np.ndarray:
    """Blend straight-alpha RGBA floats over an opaque colour; returns uint8 RGBA."""
    alpha = pixels[..., 3:4]
    bg = np.asarray(background, dtype=np.float32).reshape(1, 1, 3)
    rgb = pixels[..., :3] * alpha + bg * (1.0 - alpha)
    out = np.empty(pixels.shape, dtype=np.uint8)
    out[..., :3] = np.round(np.clip(rgb, 0.0, 1.0) * 255.0).astype(np.uint8)
    out[..., 3] = 255
    return out


def render_frame_buffer(width: int, height: int, background: Sequence[float]) -> FrameBuffer:
    """Render the configured scene and return it as an sRGB, bottom-up FrameBuffer."""
    workdir = tempfile.mkdtemp(prefix="render3d_")
    try:
        path = render_frame(os.path.join(workdir, "frame.png"))
        got_w, got_h, pixels = read_image_pixels(path)
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    if (got_w, got_h) != (width, height):
        raise ContextCreationError(
            f"Render size {got_w}x{got_h} does not match requested {width}x{height}"
        )
    data = composite_over(pixels, background)
    logger.info("Captured %dx%d frame", width, height)
    return FrameBuffer(
        width=width,
        height=height,
        data=data.tobytes(),
        row_order=RowOrder.BOTTOM_UP,
        color_space=ColorSpace.SRGB,
    )
