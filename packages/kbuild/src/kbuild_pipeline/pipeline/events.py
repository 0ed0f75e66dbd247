from __future__ import annotations

import os
import socket
import threading
from dataclasses import asdict
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from kbuild_pipeline.core import append_jsonl, iter_jsonl, utc_now_iso

from .types import Event


class EventType(str, Enum):
    RUN_ENV = "run.env"
    RUN_START = "run.start"
    RUN_FINISH = "run.finish"
    RUN_CANCELLED = "run.cancelled"

    STAGE_START = "stage.start"
    STAGE_INPUTS_OK = "stage.inputs_ok"
    STAGE_ENV_UPDATED = "stage.env_updated"
    STAGE_SUCCESS = "stage.success"
    STAGE_FAILED = "stage.failed"

    ACTION_START = "action.start"
    ACTION_FINISH = "action.finish"

    ARTIFACT_VERIFIED = "artifact.verified"


class EventSink:
    """
    Append-only JSONL event log for one run. The first record describes the
    host the run executes on.
    """

    def __init__(self, path: Path, *, run_id: str) -> None:
        self.path = Path(path)
        self.run_id = run_id
        self._lock = threading.Lock()
        self._closed = False

        self.emit(
            make_event(
                event_type=EventType.RUN_ENV,
                run_id=run_id,
                hostname=socket.gethostname(),
                pid=os.getpid(),
                cwd=str(Path.cwd()),
            )
        )

    def emit(self, event: Event) -> None:
        with self._lock:
            if self._closed:
                raise ValueError(f"Event sink closed: {self.path}")
            append_jsonl(self.path, asdict(event))

    def read(self) -> list[dict[str, Any]]:
        return list(iter_jsonl(self.path))

    def close(self) -> None:
        with self._lock:
            self._closed = True


def make_event(
    *,
    event_type: EventType | str,
    run_id: str,
    stage: Optional[str] = None,
    **data: Any,
) -> Event:
    type_value = (
        event_type.value if isinstance(event_type, EventType) else str(event_type)
    )
    return Event(
        type=type_value,
        ts_utc=utc_now_iso(),
        run_id=run_id,
        stage=stage,
        data=dict(data),
    )
