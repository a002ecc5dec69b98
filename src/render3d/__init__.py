"""Headless renderer for STL and glTF/GLB models.

Expose the `render_model` entry point, `RenderSettings` and the error
taxonomy; the pipeline stages live in `formats`, `assembly`, `framing`,
`bpy` and `encoding`.
"""

from render3d.config import RenderSettings
from render3d.errors import (
    ContextCreationError,
    EncodeError,
    MissingBlobError,
    NonFatalRenderError,
    ParseError,
    RenderError,
    TextureDecodeError,
    UnsupportedFormatError,
)
from render3d.render_task import RenderReport, render_model

__version__ = "1.0.0"

__all__ = [
    "ContextCreationError",
    "EncodeError",
    "MissingBlobError",
    "NonFatalRenderError",
    "ParseError",
    "RenderError",
    "RenderReport",
    "RenderSettings",
    "TextureDecodeError",
    "UnsupportedFormatError",
    "render_model",
]
