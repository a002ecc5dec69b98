"""Pipeline steps of the model renderer.

Each module contains PipelineStep subclasses organized by stage. They run
in this order and hand results to each other through the context dict:

    io           — ReadModelStep, DecodeModelStep
    scene        — AssembleSceneStep
    camera       — FrameCameraStep
    render       — RasterizeStep (BlenderStep)
    output       — EncodeImageStep
    blender_step — BlenderStep base class (for bpy-dependent steps)
"""

from render3d.pipeline_steps.blender_step import BlenderStep

__all__ = ["BlenderStep"]
