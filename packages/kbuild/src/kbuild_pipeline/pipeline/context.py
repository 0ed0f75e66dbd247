from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kbuild_pipeline.core import CancelToken, ILogger, RunLayout

from .env import RunEnv
from .events import EventSink, EventType, make_event


@dataclass(slots=True)
class RunContext:
    """
    Context shared across stages for a single pipeline run.
    """

    run_id: str
    layout: RunLayout
    work_root: Path
    env: RunEnv
    logger: ILogger
    events: EventSink
    cancel: CancelToken = field(default_factory=CancelToken)

    output_tail_lines: int = 40
    terminate_grace_s: float = 10.0
    hash_artifacts: bool = True

    # optional free-form metadata
    meta: dict[str, Any] = field(default_factory=dict)

    def stage_logger(self, stage: str) -> ILogger:
        return self.logger.bind(stage=stage)

    def emit(self, event: EventType | str, *, stage: str | None = None, **kw: object) -> None:
        ev = make_event(event_type=event, run_id=self.run_id, stage=stage, **kw)
        self.events.emit(ev)
        # Keep event chatter at debug level to leave console logs readable.
        self.logger.debug(ev.type, event_type=ev.type, stage=stage, **kw)
