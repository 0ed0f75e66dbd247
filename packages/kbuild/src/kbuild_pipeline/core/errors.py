from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence


class PipelineError(RuntimeError):
    """Base error"""


class DefinitionError(PipelineError):
    """
    Non-retryable: the pipeline definition file is missing, malformed, or
    violates schema constraints
    """


class InternalError(PipelineError):
    """Bugs or invariant violation in our code"""


class ActionCancelled(PipelineError):
    """A running action was interrupted by a cancellation request"""


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    """
    A normalized error record for stage failures.
    """

    kind: str
    message: str
    traceback: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class StageError(PipelineError):
    """
    Base class for the reasons a single stage can fail.

    `kind` is the class name; it is what reports and the CLI show.
    """

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"[{stage}] {message}")
        self.stage = stage

    @property
    def kind(self) -> str:
        return type(self).__name__

    def details(self) -> dict[str, Any]:
        return {}

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(kind=self.kind, message=str(self), details=self.details())


class MissingInputError(StageError):
    """A declared input artifact is absent before the stage's action runs"""

    def __init__(self, stage: str, path: Path) -> None:
        super().__init__(stage, f"missing input artifact: {path}")
        self.path = Path(path)

    def details(self) -> dict[str, Any]:
        return {"path": str(self.path)}


class MissingOutputError(StageError):
    """One or more declared output artifacts are absent after the action"""

    def __init__(self, stage: str, paths: Sequence[Path]) -> None:
        self.paths = [Path(p) for p in paths]
        listing = ", ".join(str(p) for p in self.paths)
        super().__init__(stage, f"missing output artifact(s): {listing}")

    @property
    def path(self) -> Path:
        return self.paths[0]

    def details(self) -> dict[str, Any]:
        return {"paths": [str(p) for p in self.paths]}


class ProcessExitError(StageError):
    """The external action finished with a non-zero exit status"""

    def __init__(
        self,
        stage: str,
        *,
        exit_code: int,
        output_tail: Sequence[str] = (),
        command: str | None = None,
    ) -> None:
        msg = f"action exited with status {exit_code}"
        if command:
            msg += f": {command}"
        super().__init__(stage, msg)
        self.exit_code = exit_code
        self.output_tail = list(output_tail)
        self.command = command

    def details(self) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "command": self.command,
            "output_tail": self.output_tail,
        }


class ActionError(StageError):
    """An in-process action raised instead of returning an outcome"""

    def __init__(self, stage: str, exc: BaseException) -> None:
        super().__init__(stage, f"action raised {type(exc).__name__}: {exc}")
        self.exc_type = type(exc).__name__
        self.traceback = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(
            kind=self.kind,
            message=str(self),
            traceback=self.traceback,
            details={"exc_type": self.exc_type},
        )


class StageFailure(PipelineError):
    """
    Raised by the runner when a stage fails; the run is aborted.

    Carries everything a caller needs to diagnose the failure: the stage name
    and 0-based index, the underlying StageError, the environment as it was
    when the run stopped, and the artifacts produced before the failure.
    """

    def __init__(
        self,
        *,
        stage: str,
        index: int,
        error: StageError,
        env: Mapping[str, str],
        artifacts: Sequence[Path],
        report_path: Path | None = None,
    ) -> None:
        super().__init__(f"stage #{index} '{stage}' failed ({error.kind}): {error}")
        self.stage = stage
        self.index = index
        self.error = error
        self.env = dict(env)
        self.artifacts = list(artifacts)
        self.report_path = report_path

    @property
    def kind(self) -> str:
        return self.error.kind


class RunCancelled(PipelineError):
    """The run was aborted by an external cancellation request"""

    def __init__(
        self, *, stage: str | None, index: int | None, report_path: Path | None = None
    ) -> None:
        where = f"during stage #{index} '{stage}'" if stage is not None else "between stages"
        super().__init__(f"run cancelled {where}")
        self.stage = stage
        self.index = index
        self.report_path = report_path


def error_record_from_exc(exc: BaseException) -> ErrorRecord:
    if isinstance(exc, StageError):
        return exc.to_record()
    return ErrorRecord(
        kind=type(exc).__name__,
        message=str(exc),
        traceback=traceback.format_exc(),
    )
