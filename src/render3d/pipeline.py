"""Render pipeline orchestration.

A render is a tree of steps sharing one context dict. ``Pipeline`` is
itself a ``PipelineStep``, so the decode, scene and output stages nest
under one top-level pipeline and their states are recorded under dotted
keys such as ``render3d.decode.read_model``.

Every step runs through a middleware chain:

    state write -> requirements -> logging -> timing -> execute

The execute layer turns a raised exception into a failed CompletedState
and keeps the exception object in ``context["errors"]``; non-fatal
problems travel separately in ``context["warnings"]``.

Nothing here imports Blender.
"""

from __future__ import annotations

import dataclasses
import datetime
import enum
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

logger = logging.getLogger("render3d.pipeline")


class FailureKind(str, enum.Enum):
    """Why a step did not succeed; stored as ``error["kind"]``."""

    MISSING_REQUIREMENT = "missing_requirement"
    EXCEPTION = "exception"
    INVALID_RETURN = "invalid_return"
    VALIDATION = "validation"
    STEP_FAILED = "step_failed"


@dataclass
class CompletedState:
    success: bool
    timestamp: str
    duration_s: float
    provides: List[str] = field(default_factory=list)
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    signature: Optional[str] = None

    @staticmethod
    def now_iso() -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        return now.replace(microsecond=0, tzinfo=None).isoformat() + "Z"

    @classmethod
    def failed(cls, kind: FailureKind, message: str, **error: Any) -> "CompletedState":
        return cls(
            success=False,
            timestamp=cls.now_iso(),
            duration_s=0.0,
            error={"kind": kind.value, "message": message, **error},
        )


class ExitCode(enum.IntEnum):
    OK = 0
    MISSING_REQUIREMENT = 1
    STEP_EXCEPTION = 2
    INVALID_RETURN = 3
    STEP_FAILED = 4
    FILE_NOT_FOUND = 5
    UNSUPPORTED_FORMAT = 6
    PARSE_ERROR = 7
    CONTEXT_CREATION = 8
    ENCODE_ERROR = 9


# Exception class name -> exit code for failures of kind EXCEPTION.
_EXIT_CODES_BY_ERROR = {
    "FileNotFoundError": ExitCode.FILE_NOT_FOUND,
    "UnsupportedFormatError": ExitCode.UNSUPPORTED_FORMAT,
    "ParseError": ExitCode.PARSE_ERROR,
    "ContextCreationError": ExitCode.CONTEXT_CREATION,
    "EncodeError": ExitCode.ENCODE_ERROR,
}

_EXIT_CODES_BY_KIND = {
    FailureKind.MISSING_REQUIREMENT.value: ExitCode.MISSING_REQUIREMENT,
    FailureKind.INVALID_RETURN.value: ExitCode.INVALID_RETURN,
}


def exit_code_from(cs: CompletedState) -> ExitCode:
    """Process exit code for a finished run.

    Exceptions map by class name (each error kind of the renderer has its
    own code, anything else is STEP_EXCEPTION). Orchestrator failures map
    by ``error["kind"]``; a plain unsuccessful step is STEP_FAILED.
    """
    if cs.success:
        return ExitCode.OK
    err = cs.error or {}
    if err.get("type"):
        return _EXIT_CODES_BY_ERROR.get(err["type"], ExitCode.STEP_EXCEPTION)
    return _EXIT_CODES_BY_KIND.get(err.get("kind"), ExitCode.STEP_FAILED)


class PipelineStep(ABC):
    """One unit of work reading and writing the shared context.

    ``requires`` keys must be in the context before ``run``; ``provides``
    keys must be there afterwards or the step counts as failed.
    """

    name: str
    version: str
    requires: Set[str]
    provides: Set[str]
    continue_on_error: bool

    def __init__(
        self,
        name: str,
        requires: Optional[Iterable[str]] = None,
        provides: Optional[Iterable[str]] = None,
        continue_on_error: bool = False,
        version: str = "1.0",
    ) -> None:
        self.name = name
        self.version = version
        self.requires = set(requires or ())
        self.provides = set(provides or ())
        self.continue_on_error = continue_on_error

    @abstractmethod
    def run(self, context: Dict[str, Any]) -> CompletedState:  # pragma: no cover
        raise NotImplementedError()

    def validate(self, context: Dict[str, Any]) -> bool:
        return self.provides.issubset(context)

    def rollback(self, context: Dict[str, Any]) -> None:
        """Undo partial context writes after a failure. Default: nothing."""


def _short_signature(value: Any) -> str:
    try:
        raw = json.dumps(value, sort_keys=True, default=str).encode("utf-8")
    except (TypeError, ValueError):
        raw = repr(value).encode("utf-8")
    return hashlib.sha1(raw).hexdigest()[:12]


def record_warnings(context: Dict[str, Any], warnings: Iterable[Exception]) -> None:
    """Append non-fatal errors to ``context["warnings"]`` and log each once."""
    bucket = context.setdefault("warnings", [])
    for warning in warnings:
        if any(w is warning for w in bucket):
            continue
        bucket.append(warning)
        logger.warning("%s: %s", type(warning).__name__, warning)


def _safe_rollback(step: PipelineStep, context: Dict[str, Any]) -> None:
    try:
        step.rollback(context)
    except Exception as exc:
        logger.warning("Rollback of '%s' failed: %s", step.name, exc)


def _describe_failure(error: Optional[Dict[str, Any]]) -> str:
    error = error or {}
    message = error.get("message", "")
    if error.get("type"):
        return f"{error['type']}: {message}"
    return message or "step reported failure"


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

@dataclass
class _StepCall:
    step: PipelineStep
    context: Dict[str, Any]
    key: str


_NextFn = Callable[[], CompletedState]
_Middleware = Callable[[_StepCall, _NextFn], CompletedState]


def _state_write_mw(call: _StepCall, next_fn: _NextFn) -> CompletedState:
    cs = next_fn()
    call.context.setdefault("step_states", {})[call.key] = dataclasses.asdict(cs)
    return cs


def _requirements_check_mw(call: _StepCall, next_fn: _NextFn) -> CompletedState:
    """Fail without running the step when a required key is absent."""
    missing = sorted(call.step.requires.difference(call.context))
    if not missing:
        return next_fn()
    cs = CompletedState.failed(
        FailureKind.MISSING_REQUIREMENT, f"missing requirements: {missing}",
    )
    logger.error("FAIL  %s: %s", call.key, cs.error["message"])
    return cs


def _logging_mw(call: _StepCall, next_fn: _NextFn) -> CompletedState:
    logger.info("START %s", call.key)
    cs = next_fn()
    if cs.success:
        logger.info("OK    %s (%.3fs)", call.key, cs.duration_s)
    else:
        logger.error("FAIL  %s: %s (%.3fs)", call.key, _describe_failure(cs.error), cs.duration_s)
    return cs


def _timing_mw(call: _StepCall, next_fn: _NextFn) -> CompletedState:
    start = time.perf_counter()
    cs = next_fn()
    cs.duration_s = time.perf_counter() - start
    return cs


def _execute_mw(call: _StepCall, next_fn: _NextFn) -> CompletedState:
    """Run the step and normalize every way it can go wrong.

    A raised exception is recorded as ``{"kind", "type", "message",
    "fatal"}`` and the exception object is appended to
    ``context["errors"]`` so callers can re-raise it. Any failure rolls the
    step back.
    """
    try:
        cs = next_fn()
    except Exception as exc:
        call.context.setdefault("errors", []).append(exc)
        cs = CompletedState.failed(
            FailureKind.EXCEPTION,
            str(exc),
            type=type(exc).__name__,
            fatal=getattr(exc, "fatal", True),
        )
    else:
        if not isinstance(cs, CompletedState):
            cs = CompletedState.failed(
                FailureKind.INVALID_RETURN,
                f"invalid CompletedState returned ({type(cs).__name__})",
            )
        elif cs.success and not call.step.validate(call.context):
            absent = sorted(call.step.provides.difference(call.context))
            cs = dataclasses.replace(
                cs,
                success=False,
                error={
                    "kind": FailureKind.VALIDATION.value,
                    "message": f"validation failed: provided keys {absent} not in context",
                },
            )
        elif not cs.success and cs.error is not None:
            cs.error.setdefault("kind", FailureKind.STEP_FAILED.value)

    if not cs.success:
        _safe_rollback(call.step, call.context)
    return cs


default_middleware: List[_Middleware] = [
    _state_write_mw,
    _requirements_check_mw,
    _logging_mw,
    _timing_mw,
    _execute_mw,
]


def _chain(middleware: List[_Middleware], call: _StepCall, core: _NextFn) -> _NextFn:
    """Compose middleware[0](middleware[1](...(core)))."""
    fn = core
    for mw in reversed(middleware):
        fn = (lambda m, inner: lambda: m(call, inner))(mw, fn)
    return fn


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class Pipeline(PipelineStep):
    """Sequential composite of steps (and of other pipelines).

    Unless given explicitly, ``requires`` is what the children need but
    do not produce themselves and ``provides`` is everything they produce.
    """

    steps: List[PipelineStep]

    def __init__(
        self,
        name: str = "pipeline",
        version: str = "1.0",
        steps: Optional[List[PipelineStep]] = None,
        requires: Optional[Iterable[str]] = None,
        provides: Optional[Iterable[str]] = None,
        continue_on_error: bool = False,
        middleware: Optional[List[_Middleware]] = None,
    ) -> None:
        super().__init__(
            name=name,
            requires=requires,
            provides=provides,
            continue_on_error=continue_on_error,
            version=version,
        )
        self.steps = list(steps or [])
        self._middleware = list(default_middleware if middleware is None else middleware)

        produced: Set[str] = set().union(*(s.provides for s in self.steps))
        needed: Set[str] = set().union(*(s.requires for s in self.steps))
        if requires is None:
            self.requires = needed - produced
        if provides is None:
            self.provides = produced

    def run(self, context: Dict[str, Any], *, _prefix: str = "") -> CompletedState:
        """Run the steps in order; stop at the first failure unless the
        failing step has ``continue_on_error``. The failure's error dict is
        passed up unchanged so the outermost state names the real cause.
        """
        context.setdefault("step_states", {})
        context.setdefault("warnings", [])
        prefix = _prefix or self.name
        start = time.perf_counter()

        for count, step in enumerate(self.steps, start=1):
            context["_step_index"] = context.get("_step_index", 0) + 1
            cs = self._run_step(step, context, f"{prefix}.{step.name}")
            if cs.success or step.continue_on_error:
                continue
            return CompletedState(
                success=False,
                timestamp=CompletedState.now_iso(),
                duration_s=time.perf_counter() - start,
                provides=sorted(self.provides),
                error=cs.error,
                meta={"failed_step": cs.meta.get("failed_step", step.name), "steps_run": count},
            )

        logger.debug("Pipeline %s finished %d step(s)", prefix, len(self.steps))
        return CompletedState(
            success=True,
            timestamp=CompletedState.now_iso(),
            duration_s=time.perf_counter() - start,
            provides=sorted(self.provides),
            meta={"steps_run": len(self.steps), "warnings": len(context["warnings"])},
        )

    def _run_step(self, step: PipelineStep, context: Dict[str, Any], key: str) -> CompletedState:
        def core() -> CompletedState:
            if isinstance(step, Pipeline):
                return step.run(context, _prefix=key)
            return step.run(context)

        return _chain(self._middleware, _StepCall(step, context, key), core)()
