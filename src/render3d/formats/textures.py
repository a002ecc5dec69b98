"""Texture image decoding.

Image bytes are decoded straight from memory with Pillow. Batches are run
on a thread pool and fully awaited, so callers only ever see finished
textures or explicit errors.
"""

from __future__ import annotations

import concurrent.futures
import io
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Union

from PIL import Image, UnidentifiedImageError

from render3d.errors import NonFatalRenderError, TextureDecodeError
from render3d.scene_graph import Texture, TextureSource

logger = logging.getLogger("render3d.formats.textures")


@dataclass(frozen=True)
class PendingImage:
    """Raw bytes for one image, or the error that kept them from being found."""

    source: TextureSource
    data: Optional[bytes] = None
    error: Optional[NonFatalRenderError] = None


TextureOutcome = Union[Texture, NonFatalRenderError]


def decode_image(data: bytes, source: TextureSource) -> Texture:
    """Decode encoded image bytes (PNG, JPEG, ...) to an RGBA8 texture."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            rgba = img.convert("RGBA")
    except (Image.DecompressionBombError, UnidentifiedImageError, OSError, ValueError) as exc:
        raise TextureDecodeError(source.ref, str(exc)) from exc
    width, height = rgba.size
    return Texture(width=width, height=height, pixels=rgba.tobytes(), source=source)


def decode_images(
    pending: Mapping[int, PendingImage],
    max_workers: int = 4,
) -> Dict[int, TextureOutcome]:
    """Decode every pending image and wait for all of them.

    Returns a mapping from the caller's key to either a Texture or the
    non-fatal error explaining why there is none.
    """
    outcomes: Dict[int, TextureOutcome] = {}
    jobs = {}
    for key, item in pending.items():
        if item.error is not None:
            outcomes[key] = item.error
        else:
            jobs[key] = item
    if not jobs:
        return outcomes

    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, max_workers)) as pool:
        futures = {
            pool.submit(decode_image, item.data, item.source): key
            for key, item in jobs.items()
        }
        done, _ = concurrent.futures.wait(futures)
        for future in done:
            key = futures[future]
            try:
                outcomes[key] = future.result()
            except TextureDecodeError as exc:
                outcomes[key] = exc

    decoded: List[Texture] = [o for o in outcomes.values() if isinstance(o, Texture)]
    logger.info(
        "Decoded %d of %d texture image(s)", len(decoded), len(pending),
    )
    return outcomes
