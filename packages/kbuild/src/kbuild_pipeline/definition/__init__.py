from .loader import (
    build_stages,
    deliverable_paths,
    initial_env,
    load_definition,
    parse_definition,
    resolve_definition_path,
    schema_for_pipeline_spec,
)
from .models import (
    DownloadActionSpec,
    EnvActionSpec,
    PipelineSpec,
    ProcessActionSpec,
    StageSpec,
)

__all__ = [
    "build_stages",
    "deliverable_paths",
    "initial_env",
    "load_definition",
    "parse_definition",
    "resolve_definition_path",
    "schema_for_pipeline_spec",
    "DownloadActionSpec",
    "EnvActionSpec",
    "PipelineSpec",
    "ProcessActionSpec",
    "StageSpec",
]
