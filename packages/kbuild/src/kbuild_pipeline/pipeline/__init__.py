from .artifacts import collect_artifacts, describe_artifact, missing_paths, resolve_path
from .context import RunContext
from .env import EnvChange, RunEnv
from .events import EventSink, EventType
from .report import RunReport
from .runner import PipelineRunner, RunnerConfig, RunResult
from .stage import Stage, StageResult, run_stage
from .types import ArtifactRef, RunState, StageState

__all__ = [
    "collect_artifacts",
    "describe_artifact",
    "missing_paths",
    "resolve_path",
    "RunContext",
    "EnvChange",
    "RunEnv",
    "EventSink",
    "EventType",
    "RunReport",
    "PipelineRunner",
    "RunnerConfig",
    "RunResult",
    "Stage",
    "StageResult",
    "run_stage",
    "ArtifactRef",
    "RunState",
    "StageState",
]
