"""Error taxonomy for the render pipeline.

Fatal errors abort the pipeline; non-fatal ones are collected as warnings
and the render still produces output. Callers tell them apart by class
(or the ``fatal`` flag), never by message text.
"""

from __future__ import annotations

from typing import Optional


class RenderError(Exception):
    """Base class for every error raised by the render pipeline."""

    fatal: bool = True


class UnsupportedFormatError(RenderError):
    """Model file extension is not one of the supported formats."""

    def __init__(self, extension: str) -> None:
        self.extension = extension
        super().__init__(
            f"Unsupported file format '{extension or '<none>'}'. "
            "Please use STL or glTF/GLB."
        )


class ParseError(RenderError):
    """Model bytes or document are structurally invalid."""


class ContextCreationError(RenderError):
    """The off-screen graphics context (Blender) could not be used."""


class EncodeError(RenderError):
    """The output image could not be serialized or written."""


class NonFatalRenderError(RenderError):
    """Condition that degrades the output but does not stop the render."""

    fatal = False


class MissingBlobError(NonFatalRenderError):
    """An internal (``blob:``) buffer reference could not be resolved."""

    def __init__(self, blob_id: str, detail: Optional[str] = None) -> None:
        self.blob_id = blob_id
        message = f"Blob data not found for {blob_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class TextureDecodeError(NonFatalRenderError):
    """Texture bytes were found but could not be read or decoded as an image."""

    def __init__(self, ref: str, detail: str) -> None:
        self.ref = ref
        super().__init__(f"Texture '{ref}' could not be decoded: {detail}")
