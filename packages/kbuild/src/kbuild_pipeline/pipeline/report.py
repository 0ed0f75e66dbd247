from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional

from kbuild_pipeline.core import ErrorRecord, RunProvenance, atomic_write_json

from .env import EnvChange
from .stage import StageResult
from .types import RunState


@dataclass(slots=True)
class RunReport:
    run_id: str
    state: RunState
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int

    stages: list[StageResult] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    failure: Optional[dict[str, Any]] = None
    env_changes: list[EnvChange] = field(default_factory=list)
    events_jsonl: Optional[str] = None
    provenance: Optional[RunProvenance] = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        return "success" if self.state is RunState.COMPLETED else "failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "status": self.status,
            "started_at_utc": self.started_at_utc,
            "finished_at_utc": self.finished_at_utc,
            "duration_ms": self.duration_ms,
            "stages": [s.to_dict() for s in self.stages],
            "artifacts": list(self.artifacts),
            "failure": self.failure,
            # Keys only, never values.
            "env_changes": [
                {"stage": c.stage, "keys": list(c.set_keys)} for c in self.env_changes
            ],
            "events_jsonl": self.events_jsonl,
            "provenance": asdict(self.provenance) if self.provenance else None,
            "meta": self.meta,
        }

    def write_json(self, path: Path) -> None:
        atomic_write_json(Path(path), self.to_dict())


def failure_summary(
    *, stage: str | None, index: int | None, error: ErrorRecord | None
) -> dict[str, Any]:
    return {
        "stage": stage,
        "index": index,
        "kind": error.kind if error else None,
        "message": error.message if error else None,
        "details": dict(error.details) if error else {},
    }


def build_run_report(
    *,
    run_id: str,
    state: RunState,
    started_at_utc: str,
    finished_at_utc: str,
    duration_ms: int,
    stage_results: list[StageResult],
    artifacts: list[Path],
    failure: dict[str, Any] | None,
    env_changes: list[EnvChange],
    events_jsonl: str | None,
    provenance: RunProvenance | None = None,
    meta: dict[str, Any] | None = None,
) -> RunReport:
    return RunReport(
        run_id=run_id,
        state=state,
        started_at_utc=started_at_utc,
        finished_at_utc=finished_at_utc,
        duration_ms=duration_ms,
        stages=stage_results,
        artifacts=[str(p) for p in artifacts],
        failure=failure,
        env_changes=env_changes,
        events_jsonl=events_jsonl,
        provenance=provenance,
        meta=meta or {},
    )
