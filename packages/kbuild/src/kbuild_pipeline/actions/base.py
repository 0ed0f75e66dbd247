from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from kbuild_pipeline.core import CancelToken, ILogger, expand_vars, monotonic_ms


@dataclass(frozen=True, slots=True)
class ActionContext:
    """
    Everything an action may touch while it runs.

    `env` is a read-only snapshot of the run environment taken when the stage
    started; actions report changes through ActionOutcome instead of mutating it.
    """

    stage: str
    env: Mapping[str, str]
    cwd: Path
    log_path: Path
    env_file: Path
    path_file: Path
    logger: ILogger
    cancel: CancelToken
    tail_lines: int = 40
    terminate_grace_s: float = 10.0

    def expand(self, text: str) -> str:
        return expand_vars(text, self.env)

    def resolve(self, text: str) -> Path:
        p = Path(self.expand(text)).expanduser()
        return p if p.is_absolute() else self.cwd / p


@dataclass(slots=True)
class ActionOutcome:
    exit_code: int
    output_tail: list[str] = field(default_factory=list)
    env_updates: dict[str, str] = field(default_factory=dict)
    path_prepend: list[str] = field(default_factory=list)
    attempts: int = 1
    duration_ms: int = 0
    command: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class Action(Protocol):
    def describe(self) -> str: ...

    def execute(self, ctx: ActionContext) -> ActionOutcome: ...


FunctionActionFn = Callable[[ActionContext], "ActionOutcome | Mapping[str, str] | None"]


@dataclass(slots=True)
class FunctionAction:
    """
    Adapter that turns a plain function into an Action.

    The function may return an ActionOutcome, a mapping of environment
    updates (exit code 0), or None.
    """

    fn: FunctionActionFn
    label: str | None = None

    def describe(self) -> str:
        return self.label or getattr(self.fn, "__name__", "function")

    def execute(self, ctx: ActionContext) -> ActionOutcome:
        t0 = monotonic_ms()
        res: Any = self.fn(ctx)
        if res is None:
            res = ActionOutcome(exit_code=0)
        elif not isinstance(res, ActionOutcome):
            if not isinstance(res, Mapping):
                raise TypeError(
                    f"{self.describe()} returned {type(res).__name__}, "
                    "expected ActionOutcome, mapping or None"
                )
            res = ActionOutcome(exit_code=0, env_updates={str(k): str(v) for k, v in res.items()})
        if not res.duration_ms:
            res.duration_ms = monotonic_ms() - t0
        if res.command is None:
            res.command = self.describe()
        return res
