"""Base class for steps that drive Blender through ``bpy``.

``bpy`` is imported when such a step runs, never at module import, so the
decode and framing stages work in a plain Python process. A process
without Blender fails the step with ContextCreationError.

A step may leave a ``.blend`` copy of the scene it built, for opening in
Blender when a render looks wrong. Snapshots are written only when the
run has a ``context["snapshot_dir"]``; ``context["save_scenes"]`` then
overrides the per-step ``save_scene`` flag. Files are named
``{NNN}_{step}.blend`` from the orchestrator's ``_step_index`` and listed
in ``context["snapshots"]``.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import Any, Dict

from render3d.errors import ContextCreationError
from render3d.pipeline import CompletedState, PipelineStep

logger = logging.getLogger("render3d.steps.blender_step")


def require_bpy():
    """Import and return ``bpy``, or raise ContextCreationError."""
    try:
        import bpy
    except ImportError as exc:
        raise ContextCreationError(
            f"Blender Python module 'bpy' is not available: {exc}"
        ) from exc
    return bpy


class BlenderStep(PipelineStep):
    """Step whose work happens inside Blender; subclasses write ``execute``."""

    def __init__(self, name: str, save_scene: bool = False, **kwargs: Any) -> None:
        super().__init__(name=name, **kwargs)
        self.save_scene = save_scene

    @abstractmethod
    def execute(self, context: Dict[str, Any]) -> CompletedState:
        raise NotImplementedError()  # pragma: no cover

    def run(self, context: Dict[str, Any]) -> CompletedState:
        require_bpy()
        result = self.execute(context)
        if result.success and self.wants_snapshot(context):
            self.snapshot(context)
        return result

    def wants_snapshot(self, context: Dict[str, Any]) -> bool:
        if not context.get("snapshot_dir"):
            return False
        override = context.get("save_scenes")
        return self.save_scene if override is None else bool(override)

    def snapshot(self, context: Dict[str, Any]) -> None:
        """Save the current scene; a failed save is logged, not raised."""
        from render3d.bpy.scene import save_snapshot

        label = f"{context.get('_step_index', 0):03d}_{self.name}"
        try:
            path = save_snapshot(context["snapshot_dir"], label)
        except (OSError, RuntimeError) as exc:
            logger.warning("Scene snapshot after '%s' not saved: %s", self.name, exc)
            return
        context.setdefault("snapshots", []).append(path)
