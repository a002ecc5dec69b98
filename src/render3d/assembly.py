"""Scene assembly: fixed lighting rig and per-format orientation fixes."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Tuple

import numpy as np

from render3d.errors import NonFatalRenderError
from render3d.formats import DecodedModel, ModelFormat
from render3d.scene_graph import (
    Light,
    LightKind,
    SceneNode,
    axis_angle_quat,
    quat_multiply,
    quat_to_matrix,
)

logger = logging.getLogger("render3d.assembly")

WHITE = (1.0, 1.0, 1.0)

# Model-independent three-light rig.
AMBIENT_LIGHT = Light(LightKind.AMBIENT, WHITE, 0.8)
KEY_LIGHT = Light(LightKind.DIRECTIONAL, WHITE, 1.5, position=(5.0, 10.0, 7.0), cast_shadow=True)
FILL_LIGHT = Light(LightKind.POINT, WHITE, 1.5, position=(10.0, 10.0, 10.0), cast_shadow=True)
DEFAULT_LIGHTS: Tuple[Light, ...] = (AMBIENT_LIGHT, KEY_LIGHT, FILL_LIGHT)


@dataclass(frozen=True)
class OrientationCorrection:
    """Fixed rotation (axis, radians) applied to a decoded root.

    STL and glTF authoring tools disagree on up axis and facing; each
    format gets one constant turn so models come out upright relative to
    the framing camera, which sits on +Z looking down -Z.
    """

    axis: str
    angle: float


TRIANGLE_MESH_CORRECTION = OrientationCorrection("X", math.pi)
SCENE_PACKAGE_CORRECTION = OrientationCorrection("X", -math.pi)

ORIENTATION_CORRECTIONS = {
    ModelFormat.TRIANGLE_MESH: TRIANGLE_MESH_CORRECTION,
    ModelFormat.SCENE_PACKAGE: SCENE_PACKAGE_CORRECTION,
}


@dataclass
class AssembledScene:
    root: SceneNode
    lights: Tuple[Light, ...]
    fmt: ModelFormat
    warnings: List[NonFatalRenderError] = field(default_factory=list)


def apply_correction(node: SceneNode, correction: OrientationCorrection) -> None:
    """Pre-multiply the node's local transform by the correction rotation."""
    turn = axis_angle_quat(correction.axis, correction.angle)
    if node.matrix is not None:
        rotation = np.eye(4)
        rotation[:3, :3] = quat_to_matrix(turn)
        corrected = rotation @ node.local_matrix()
        node.matrix = tuple(float(v) for v in corrected.T.reshape(-1))
    else:
        node.rotation = quat_multiply(turn, node.rotation)
        node.translation = tuple(float(v) for v in quat_to_matrix(turn) @ np.asarray(node.translation))


def assemble_scene(decoded: DecodedModel) -> AssembledScene:
    """Light the decoded model, fix its orientation and mark shadow flags."""
    correction = ORIENTATION_CORRECTIONS[decoded.fmt]
    apply_correction(decoded.root, correction)

    meshes = decoded.root.mesh_nodes()
    for node in meshes:
        node.cast_shadow = True
        node.receive_shadow = True

    logger.info(
        "Assembled %s scene: %d mesh node(s), %d light(s), rotated %.0f deg about %s",
        decoded.fmt.value, len(meshes), len(DEFAULT_LIGHTS),
        math.degrees(correction.angle), correction.axis,
    )
    return AssembledScene(
        root=decoded.root,
        lights=DEFAULT_LIGHTS,
        fmt=decoded.fmt,
        warnings=list(decoded.warnings),
    )
