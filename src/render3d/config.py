"""Render settings shared by the framing, rasterize and CLI layers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Tuple

DEFAULT_FOV_DEG = 45.0
DEFAULT_PADDING = 1.5
DEFAULT_NEAR = 0.1
DEFAULT_FAR = 1000.0
DEFAULT_CAMERA_DISTANCE = 5.0
DEFAULT_SAMPLES = 32

ENGINES = ("eevee", "cycles")

_HEX_COLOR_RE = re.compile(r"^#?([0-9a-fA-F]{6})$")


def parse_hex_color(value: str) -> Tuple[float, float, float]:
    """Parse ``RRGGBB`` (optionally ``#``-prefixed) into 0..1 floats."""
    match = _HEX_COLOR_RE.match(value.strip())
    if not match:
        raise ValueError(f"Colour must be RRGGBB hex, got '{value}'")
    digits = match.group(1)
    return tuple(int(digits[i:i + 2], 16) / 255.0 for i in (0, 2, 4))  # type: ignore[return-value]


@dataclass(frozen=True)
class RenderSettings:
    """Tunables for one render.

    Attributes:
        fov_deg:             Vertical field of view of the framing camera.
        padding:             Multiplier applied to the fitted camera distance.
        near / far:          Default clip planes (widened to fit the model).
        min_camera_distance: Fallback distance for empty/degenerate scenes.
        background:          The single clear colour composited behind the model.
        engine:              ``eevee`` (shadow-mapped raster) or ``cycles``.
        samples:             Render samples (TAA for EEVEE, paths for Cycles).
        shadow_soft_size:    Light radius used for soft shadows.
        texture_workers:     Thread pool size for embedded image decoding.
    """

    fov_deg: float = DEFAULT_FOV_DEG
    padding: float = DEFAULT_PADDING
    near: float = DEFAULT_NEAR
    far: float = DEFAULT_FAR
    min_camera_distance: float = DEFAULT_CAMERA_DISTANCE
    background: Tuple[float, float, float] = (0.0, 0.0, 0.0)
    engine: str = "eevee"
    samples: int = DEFAULT_SAMPLES
    shadow_soft_size: float = 0.25
    texture_workers: int = 4

    def __post_init__(self) -> None:
        if not 0.0 < self.fov_deg < 180.0:
            raise ValueError(f"fov_deg must be in (0, 180), got {self.fov_deg}")
        if self.padding <= 0.0:
            raise ValueError(f"padding must be positive, got {self.padding}")
        if self.min_camera_distance <= 0.0:
            raise ValueError("min_camera_distance must be positive")
        if self.engine not in ENGINES:
            raise ValueError(f"engine must be one of {ENGINES}, got '{self.engine}'")
        if self.samples < 1:
            raise ValueError("samples must be >= 1")

    @classmethod
    def from_args(cls, args: Any) -> "RenderSettings":
        """Build settings from an argparse namespace, keeping defaults for unset flags."""
        overrides = {}
        for name in ("fov_deg", "padding", "engine", "samples"):
            value = getattr(args, name, None)
            if value is not None:
                overrides[name] = value
        background = getattr(args, "background", None)
        if background is not None:
            overrides["background"] = parse_hex_color(background)
        return cls(**overrides)
