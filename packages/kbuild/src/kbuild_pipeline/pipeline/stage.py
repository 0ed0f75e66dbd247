from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from kbuild_pipeline.actions import Action, ActionContext, ActionOutcome
from kbuild_pipeline.core import (
    ActionCancelled,
    ActionError,
    ErrorRecord,
    ILogger,
    MissingInputError,
    MissingOutputError,
    ProcessExitError,
    StageError,
    format_duration_ms,
    monotonic_ms,
    unresolved_vars,
    utc_now_iso,
)

from .artifacts import describe_artifact, missing_paths, resolve_path
from .context import RunContext
from .events import EventType
from .state import advance_stage
from .types import ArtifactRef, StageState


@dataclass(frozen=True, slots=True)
class Stage:
    """
    One ordered unit of pipeline work.

    `inputs`, `outputs` and `cwd` are path templates (`$VAR`, `${VAR}`),
    relative ones anchored at the run's work root. `exports` are set in the
    shared environment once the action has exited 0.
    """

    name: str
    action: Action
    inputs: Sequence[str] = ()
    outputs: Sequence[str] = ()
    cwd: Optional[str] = None
    exports: Mapping[str, str] = field(default_factory=dict)
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Stage.name must not be empty")
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "exports", dict(self.exports))


@dataclass(slots=True)
class StageResult:
    stage: str
    index: int
    state: StageState = StageState.PENDING
    action: Optional[str] = None
    started_at_utc: Optional[str] = None
    finished_at_utc: Optional[str] = None
    duration_ms: int = 0

    inputs: list[str] = field(default_factory=list)
    artifacts: list[ArtifactRef] = field(default_factory=list)
    exit_code: Optional[int] = None
    attempts: int = 0
    env_keys: list[str] = field(default_factory=list)
    log_path: Optional[str] = None
    error: Optional[ErrorRecord] = None
    cancelled: bool = False

    failure: Optional[StageError] = field(default=None, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.state is StageState.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "index": self.index,
            "state": self.state.value,
            "action": self.action,
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "duration_ms": self.duration_ms,
            "inputs": list(self.inputs),
            "artifacts": [asdict(a) for a in self.artifacts],
            "exit_code": self.exit_code,
            "attempts": self.attempts,
            "env_keys": list(self.env_keys),
            "log_path": self.log_path,
            "error": asdict(self.error) if self.error else None,
            "cancelled": self.cancelled,
        }


def run_stage(
    *,
    ctx: RunContext,
    stage: Stage,
    index: int,
    total: int | None = None,
) -> StageResult:
    """
    Run one stage: check inputs, execute the action, apply its environment
    updates, check its exit status, check outputs.

    Stage failures are returned in the result, never raised.
    """
    name = stage.name
    log = ctx.stage_logger(name)

    res = StageResult(stage=name, index=index, action=stage.action.describe())
    res.log_path = str(ctx.layout.stage_log(index, name))

    t0 = monotonic_ms()
    res.started_at_utc = utc_now_iso()
    res.state = advance_stage(res.state, StageState.RUNNING)
    position = f"{index + 1}/{total}" if total is not None else None

    ctx.emit(EventType.STAGE_START, stage=name, index=index, action=res.action)
    log.info("Stage starting", position=position, action=res.action)

    try:
        _execute(ctx, stage, index, res, log)
    except ActionCancelled as e:
        res.cancelled = True
        res.error = ErrorRecord(kind=type(e).__name__, message=str(e))
        return _finish(ctx, res, t0, StageState.FAILED, log, position)
    except StageError as e:
        res.failure = e
        res.error = e.to_record()
        return _finish(ctx, res, t0, StageState.FAILED, log, position)

    return _finish(ctx, res, t0, StageState.SUCCEEDED, log, position)


def _execute(
    ctx: RunContext, stage: Stage, index: int, res: StageResult, log: ILogger
) -> None:
    name = stage.name
    snapshot = ctx.env.snapshot()

    inputs = [resolve_path(t, snapshot, ctx.work_root) for t in stage.inputs]
    res.inputs = [str(p) for p in inputs]
    for template, path in zip(stage.inputs, inputs):
        if not path.exists():
            unresolved = unresolved_vars(template, snapshot)
            if unresolved:
                log.warning("Unresolved variables in input", template=template, names=unresolved)
            raise MissingInputError(name, path)

    cwd = resolve_path(stage.cwd, snapshot, ctx.work_root) if stage.cwd else ctx.work_root
    if not cwd.is_dir():
        raise MissingInputError(name, cwd)

    ctx.emit(EventType.STAGE_INPUTS_OK, stage=name, inputs=res.inputs, cwd=str(cwd))

    action_ctx = ActionContext(
        stage=name,
        env=snapshot,
        cwd=cwd,
        log_path=Path(res.log_path or ctx.layout.stage_log(index, name)),
        env_file=ctx.layout.stage_env_file(index, name),
        path_file=ctx.layout.stage_path_file(index, name),
        logger=log,
        cancel=ctx.cancel,
        tail_lines=ctx.output_tail_lines,
        terminate_grace_s=ctx.terminate_grace_s,
    )

    ctx.emit(EventType.ACTION_START, stage=name, command=res.action)
    try:
        outcome: ActionOutcome = stage.action.execute(action_ctx)
    except ActionCancelled:
        raise
    except Exception as e:
        log.exception("Action raised")
        raise ActionError(name, e) from e

    res.exit_code = outcome.exit_code
    res.attempts = outcome.attempts
    ctx.emit(
        EventType.ACTION_FINISH,
        stage=name,
        exit_code=outcome.exit_code,
        attempts=outcome.attempts,
        duration_ms=outcome.duration_ms,
    )

    # Updates are applied even when the action failed; nothing is rolled back.
    try:
        keys = ctx.env.apply(
            stage=name, updates=outcome.env_updates, path_prepend=outcome.path_prepend
        )
    except ValueError as e:
        raise ActionError(name, e) from e

    if not outcome.ok:
        for line in outcome.output_tail:
            log.error("output", line=line)
        raise ProcessExitError(
            name,
            exit_code=outcome.exit_code,
            output_tail=outcome.output_tail,
            command=outcome.command,
        )

    if stage.exports:
        exports = {k: ctx.env.expand(v) for k, v in stage.exports.items()}
        keys += [k for k in ctx.env.apply(stage=name, updates=exports) if k not in keys]

    res.env_keys = keys
    if keys:
        ctx.emit(EventType.STAGE_ENV_UPDATED, stage=name, keys=sorted(keys))

    post = ctx.env.snapshot()
    outputs = [resolve_path(t, post, ctx.work_root) for t in stage.outputs]
    missing = missing_paths(outputs)
    if missing:
        raise MissingOutputError(name, missing)

    for p in outputs:
        ref = describe_artifact(p, stage=name, with_digest=ctx.hash_artifacts)
        res.artifacts.append(ref)
        ctx.emit(
            EventType.ARTIFACT_VERIFIED,
            stage=name,
            path=ref.path,
            kind=ref.kind,
            bytes=ref.bytes,
            sha256=ref.sha256,
        )


def _finish(
    ctx: RunContext,
    res: StageResult,
    t0: int,
    state: StageState,
    log: ILogger,
    position: str | None,
) -> StageResult:
    res.state = advance_stage(res.state, state)
    res.finished_at_utc = utc_now_iso()
    res.duration_ms = monotonic_ms() - t0

    log_fields: dict[str, object] = {
        "status": res.state.value,
        "position": position,
        "duration_ms": res.duration_ms,
        "duration": format_duration_ms(res.duration_ms),
    }

    if res.succeeded:
        ctx.emit(EventType.STAGE_SUCCESS, stage=res.stage, duration_ms=res.duration_ms)
        if res.artifacts:
            log_fields["artifacts"] = len(res.artifacts)
        if res.env_keys:
            log_fields["env_keys"] = sorted(res.env_keys)
        log.info("Stage succeeded", **log_fields)
        return res

    assert res.error is not None
    ctx.emit(
        EventType.STAGE_FAILED,
        stage=res.stage,
        duration_ms=res.duration_ms,
        kind=res.error.kind,
        message=res.error.message,
        details=res.error.details,
    )
    log.error("Stage failed", kind=res.error.kind, error=res.error.message, **log_fields)
    return res
