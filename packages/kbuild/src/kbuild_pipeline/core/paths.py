from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]+")


def _slug(name: str) -> str:
    return _UNSAFE.sub("_", name).strip("_") or "stage"


@dataclass(frozen=True, slots=True)
class RunLayout:
    """
    Canonical path layout for the bookkeeping of one run:

      {run_root}/{run_id}/events.jsonl
      {run_root}/{run_id}/run_report.json
      {run_root}/{run_id}/logs/{NN}-{stage}.log
      {run_root}/{run_id}/env/{NN}-{stage}.env
      {run_root}/{run_id}/env/{NN}-{stage}.path
    """

    root: Path

    @classmethod
    def for_run(cls, run_root: Path, run_id: str) -> "RunLayout":
        return cls(root=Path(run_root) / run_id)

    def events_jsonl(self) -> Path:
        return self.root / "events.jsonl"

    def report_json(self) -> Path:
        return self.root / "run_report.json"

    def logs_root(self) -> Path:
        return self.root / "logs"

    def env_root(self) -> Path:
        return self.root / "env"

    def _stem(self, index: int, stage: str) -> str:
        return f"{index:02d}-{_slug(stage)}"

    def stage_log(self, index: int, stage: str) -> Path:
        return self.logs_root() / f"{self._stem(index, stage)}.log"

    def stage_env_file(self, index: int, stage: str) -> Path:
        return self.env_root() / f"{self._stem(index, stage)}.env"

    def stage_path_file(self, index: int, stage: str) -> Path:
        return self.env_root() / f"{self._stem(index, stage)}.path"

    def ensure_dirs(self) -> None:
        for p in (self.root, self.logs_root(), self.env_root()):
            p.mkdir(parents=True, exist_ok=True)
