"""PNG encoding of rendered frame buffers."""

from __future__ import annotations

import io
import logging
import os
import tempfile

import numpy as np
from PIL import Image

from render3d.errors import EncodeError
from render3d.scene_graph import ColorSpace, FrameBuffer, RowOrder

logger = logging.getLogger("render3d.encoding")


def srgb_from_linear(rgb: np.ndarray) -> np.ndarray:
    """Apply the sRGB transfer curve to linear values in [0, 1]."""
    rgb = np.clip(rgb, 0.0, 1.0)
    return np.where(
        rgb <= 0.0031308,
        rgb * 12.92,
        1.055 * np.power(rgb, 1.0 / 2.4) - 0.055,
    )


def to_display_pixels(frame: FrameBuffer) -> np.ndarray:
    """(height, width, 4) uint8 pixels, top row first, sRGB encoded."""
    pixels = frame.as_array()
    if frame.row_order is RowOrder.BOTTOM_UP:
        pixels = pixels[::-1]
    if frame.color_space is ColorSpace.LINEAR:
        rgb = srgb_from_linear(pixels[..., :3].astype(np.float64) / 255.0)
        pixels = np.concatenate(
            [np.round(rgb * 255.0).astype(np.uint8), pixels[..., 3:]], axis=-1,
        )
    return np.ascontiguousarray(pixels)


def encode_png(frame: FrameBuffer) -> bytes:
    """Encode a frame buffer as RGBA PNG bytes.

    Raises:
        EncodeError: If Pillow cannot serialize the pixels.
    """
    pixels = to_display_pixels(frame)
    buf = io.BytesIO()
    try:
        image = Image.frombytes("RGBA", (frame.width, frame.height), pixels.tobytes())
        image.save(buf, format="PNG")
    except (OSError, ValueError) as exc:
        raise EncodeError(f"PNG encoding failed: {exc}") from exc
    return buf.getvalue()


def write_png(frame: FrameBuffer, path: str) -> int:
    """Encode and atomically write ``frame`` to ``path``; returns the byte count.

    The PNG is written to a temporary file next to ``path`` and renamed
    into place, so a failed write never leaves a partial file behind.

    Raises:
        EncodeError: On encoding or file system failure.
    """
    data = encode_png(frame)
    path = os.path.abspath(str(path))
    directory = os.path.dirname(path)
    try:
        fd, tmp = tempfile.mkstemp(prefix=".render3d_", suffix=".png", dir=directory)
    except OSError as exc:
        raise EncodeError(f"Cannot write '{path}': {exc}") from exc
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except OSError as exc:
        raise EncodeError(f"Cannot write '{path}': {exc}") from exc
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)
    logger.info("Wrote %dx%d PNG (%d bytes) to %s", frame.width, frame.height, len(data), path)
    return len(data)
