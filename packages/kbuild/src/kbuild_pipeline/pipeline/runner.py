from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

from kbuild_pipeline.actions import FunctionAction
from kbuild_pipeline.actions.base import FunctionActionFn
from kbuild_pipeline.core import (
    CancelToken,
    ErrorRecord,
    ILogger,
    PipelineError,
    RunCancelled,
    RunLayout,
    RunProvenance,
    Settings,
    StageFailure,
    configure_logging,
    error_record_from_exc,
    format_duration_ms,
    get_logger,
    monotonic_ms,
    new_run_id,
    utc_now_iso,
)

from .context import RunContext
from .env import RunEnv
from .events import EventSink, EventType
from .report import build_run_report, failure_summary
from .stage import Stage, StageResult, run_stage
from .state import advance_run
from .types import RunState, StageState


@dataclass(slots=True)
class RunnerConfig:
    run_root: Path = Path("_runs")
    work_root: Path = Path(".")
    output_tail_lines: int = 40
    terminate_grace_s: float = 10.0
    hash_artifacts: bool = True

    @classmethod
    def from_settings(cls, s: Settings) -> "RunnerConfig":
        return cls(
            run_root=Path(s.run_root),
            work_root=Path(s.work_root),
            output_tail_lines=s.output_tail_lines,
            terminate_grace_s=s.terminate_grace_s,
            hash_artifacts=s.hash_artifacts,
        )


@dataclass(frozen=True, slots=True)
class RunResult:
    run_id: str
    env: Mapping[str, str]
    artifacts: list[Path]
    stages: list[StageResult] = field(default_factory=list)
    report_path: Path | None = None
    state: RunState = RunState.COMPLETED


def default_logger() -> ILogger:
    """
    Provide a structlog BoundLogger that satisfies ILogger.
    """
    configure_logging()
    return get_logger("pipeline")


class PipelineRunner:
    """
    Runs an ordered list of stages to completion or stops at the first failure.
    """

    def __init__(
        self,
        *,
        cfg: RunnerConfig | None = None,
        logger: ILogger | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.cfg = cfg or RunnerConfig()
        self.logger: ILogger = logger or default_logger()
        self.cancel = cancel or CancelToken()
        self.state = RunState.IDLE

    @staticmethod
    def fn(
        name: str,
        fn: FunctionActionFn,
        *,
        inputs: Sequence[str] = (),
        outputs: Sequence[str] = (),
    ) -> Stage:
        return Stage(name=name, action=FunctionAction(fn), inputs=inputs, outputs=outputs)

    def run(
        self,
        stages: Sequence[Stage],
        initial_env: Mapping[str, str] | None = None,
        *,
        run_id: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> RunResult:
        """
        Execute the stages in order and write events.jsonl and run_report.json
        under `<run_root>/<run_id>/`.

        Returns a RunResult when every stage succeeded. Raises StageFailure on
        the first failed stage and RunCancelled when the cancel token fires.
        """
        stages = list(stages)
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        names = [s.name for s in stages]
        if len(names) != len(set(names)):
            dupes = sorted({x for x in names if names.count(x) > 1})
            raise ValueError(f"Duplicate stage name(s): {dupes}")
        if self.state is not RunState.IDLE:
            raise PipelineError("PipelineRunner instances run a single pipeline once")

        meta = meta or {}
        rid = run_id or new_run_id()
        layout = RunLayout.for_run(self.cfg.run_root, rid)
        layout.ensure_dirs()
        sink = EventSink(layout.events_jsonl(), run_id=rid)

        log = self.logger.bind(run_id=rid)
        ctx = RunContext(
            run_id=rid,
            layout=layout,
            work_root=Path(self.cfg.work_root).resolve(),
            env=RunEnv(initial_env or {}),
            logger=log,
            events=sink,
            cancel=self.cancel,
            output_tail_lines=self.cfg.output_tail_lines,
            terminate_grace_s=self.cfg.terminate_grace_s,
            hash_artifacts=self.cfg.hash_artifacts,
            meta=meta,
        )

        started_at = utc_now_iso()
        t0 = monotonic_ms()
        self.state = advance_run(self.state, RunState.RUNNING)

        log.info(
            "Pipeline starting",
            stages=names,
            work_root=str(ctx.work_root),
            run_root=str(layout.root),
            meta_keys=sorted(meta.keys()),
        )
        ctx.emit(EventType.RUN_START, stages=names, meta=meta)

        results: list[StageResult] = []
        artifacts: list[Path] = []
        failure: StageFailure | RunCancelled | None = None
        failure_info: dict[str, Any] | None = None
        total = len(stages)

        try:
            for idx, st in enumerate(stages):
                if self.cancel.cancelled:
                    failure = RunCancelled(stage=None, index=idx)
                    failure_info = failure_summary(
                        stage=None,
                        index=idx,
                        error=ErrorRecord(kind="RunCancelled", message=str(failure)),
                    )
                    break

                res = run_stage(ctx=ctx, stage=st, index=idx, total=total)
                results.append(res)

                if res.cancelled:
                    failure = RunCancelled(stage=st.name, index=idx)
                    failure_info = failure_summary(stage=st.name, index=idx, error=res.error)
                    break

                if res.state is StageState.FAILED:
                    assert res.failure is not None
                    failure = StageFailure(
                        stage=st.name,
                        index=idx,
                        error=res.failure,
                        env=ctx.env.as_dict(),
                        artifacts=artifacts,
                    )
                    failure_info = failure_summary(stage=st.name, index=idx, error=res.error)
                    log.error("Stopping on first failure", stage=st.name, index=idx)
                    break

                artifacts.extend(Path(a.path) for a in res.artifacts)

        except BaseException as e:
            # Unexpected: still leave a report behind before propagating.
            idx = len(results)
            record = error_record_from_exc(e)
            name: str | None = None
            if idx < total:
                name = stages[idx].name
                results.append(
                    StageResult(
                        stage=name,
                        index=idx,
                        state=StageState.FAILED,
                        action=stages[idx].action.describe(),
                        finished_at_utc=utc_now_iso(),
                        error=record,
                    )
                )
            self.state = advance_run(self.state, RunState.ABORTED)
            self._finish(
                ctx,
                stages,
                results,
                artifacts,
                started_at,
                t0,
                failure_summary(stage=name, index=idx, error=record),
            )
            raise

        if isinstance(failure, RunCancelled):
            ctx.emit(EventType.RUN_CANCELLED, stage=failure.stage, reason=self.cancel.reason)

        self.state = advance_run(
            self.state, RunState.COMPLETED if failure is None else RunState.ABORTED
        )
        report_path = self._finish(
            ctx, stages, results, artifacts, started_at, t0, failure_info
        )

        if failure is not None:
            failure.report_path = report_path
            raise failure

        return RunResult(
            run_id=rid,
            env=ctx.env.snapshot(),
            artifacts=artifacts,
            stages=results,
            report_path=report_path,
            state=self.state,
        )

    def _finish(
        self,
        ctx: RunContext,
        stages: list[Stage],
        results: list[StageResult],
        artifacts: list[Path],
        started_at: str,
        t0: int,
        failure: dict[str, Any] | None,
    ) -> Path:
        duration = monotonic_ms() - t0

        # Stages that never ran stay pending in the report.
        all_results = list(results) + [
            StageResult(stage=st.name, index=i, action=st.action.describe())
            for i, st in enumerate(stages)
            if i >= len(results)
        ]

        report = build_run_report(
            run_id=ctx.run_id,
            state=self.state,
            started_at_utc=started_at,
            finished_at_utc=utc_now_iso(),
            duration_ms=duration,
            stage_results=all_results,
            artifacts=artifacts,
            failure=failure,
            env_changes=ctx.env.history(),
            events_jsonl=str(ctx.layout.events_jsonl()),
            provenance=RunProvenance(run_id=ctx.run_id, started_at_utc=started_at),
            meta=ctx.meta,
        )
        report_path = ctx.layout.report_json()
        report.write_json(report_path)

        ctx.emit(
            EventType.RUN_FINISH,
            state=self.state.value,
            duration_ms=duration,
            report_json=str(report_path),
        )
        ctx.events.close()

        ctx.logger.info(
            "Run Complete",
            state=self.state.value,
            duration_ms=duration,
            duration=format_duration_ms(duration),
            report=str(report_path),
            events=str(ctx.layout.events_jsonl()),
            artifacts=len(artifacts),
        )
        return report_path
