from __future__ import annotations

from kbuild_pipeline.core import InternalError

from .types import RunState, StageState

STAGE_TRANSITIONS: dict[StageState, frozenset[StageState]] = {
    StageState.PENDING: frozenset({StageState.RUNNING}),
    StageState.RUNNING: frozenset({StageState.SUCCEEDED, StageState.FAILED}),
    StageState.SUCCEEDED: frozenset(),
    StageState.FAILED: frozenset(),
}

RUN_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.RUNNING}),
    RunState.RUNNING: frozenset({RunState.COMPLETED, RunState.ABORTED}),
    RunState.COMPLETED: frozenset(),
    RunState.ABORTED: frozenset(),
}


def advance_stage(current: StageState, new: StageState) -> StageState:
    if new not in STAGE_TRANSITIONS[current]:
        raise InternalError(f"Illegal stage transition {current} -> {new}")
    return new


def advance_run(current: RunState, new: RunState) -> RunState:
    if new not in RUN_TRANSITIONS[current]:
        raise InternalError(f"Illegal run transition {current} -> {new}")
    return new


def is_terminal(state: StageState | RunState) -> bool:
    if isinstance(state, StageState):
        return not STAGE_TRANSITIONS[state]
    return not RUN_TRANSITIONS[state]
