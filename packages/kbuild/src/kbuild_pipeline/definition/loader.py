from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Mapping

import jsonschema
from kbuild_pipeline.actions import Action, DownloadAction, EnvAction, ProcessAction
from kbuild_pipeline.core import (
    WORKSPACE_VAR,
    DefinitionError,
    expand_vars,
    read_json,
)
from kbuild_pipeline.pipeline import Stage, resolve_path
from pydantic import TypeAdapter, ValidationError

from .models import (
    ActionSpec,
    DownloadActionSpec,
    EnvActionSpec,
    PipelineSpec,
    ProcessActionSpec,
)

DEFINITION_ENV_VAR = "KBUILD_DEFINITION"


def resolve_definition_path(explicit: Path | None = None) -> Path:
    """
    Resolve the pipeline definition file.

    Priority:
      1) explicit argument
      2) env KBUILD_DEFINITION
      3) ./pipeline.json
    """
    if explicit is not None:
        p = Path(explicit).expanduser().resolve()
        if p.is_file():
            return p
        raise DefinitionError(f"Pipeline definition not found: {p}")

    env = os.environ.get(DEFINITION_ENV_VAR)
    if env:
        p = Path(env).expanduser().resolve()
        if p.is_file():
            return p
        raise DefinitionError(f"{DEFINITION_ENV_VAR} does not point to a file: {p}")

    cand = Path.cwd() / "pipeline.json"
    if cand.is_file():
        return cand.resolve()

    raise DefinitionError(
        "Could not resolve a pipeline definition. "
        f"Pass a path or set {DEFINITION_ENV_VAR}."
    )


def schema_for_pipeline_spec() -> dict:
    return TypeAdapter(PipelineSpec).json_schema()


def parse_definition(raw: object, *, source: str = "<memory>") -> PipelineSpec:
    try:
        jsonschema.validate(instance=raw, schema=schema_for_pipeline_spec())
    except jsonschema.ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise DefinitionError(f"{source}: schema violation at {where}: {e.message}") from e

    try:
        return PipelineSpec.model_validate(raw)
    except ValidationError as e:
        raise DefinitionError(f"{source}: {e}") from e


def load_definition(path: Path) -> PipelineSpec:
    path = Path(path)
    try:
        raw = read_json(path)
    except FileNotFoundError as e:
        raise DefinitionError(f"Pipeline definition not found: {path}") from e
    except json.JSONDecodeError as e:
        raise DefinitionError(f"{path}: invalid JSON: {e}") from e
    return parse_definition(raw, source=str(path))


def build_action(spec: ActionSpec) -> Action:
    if isinstance(spec, ProcessActionSpec):
        return ProcessAction(
            argv=list(spec.argv) if spec.argv is not None else None,
            script=spec.script,
            shell=spec.shell,
            env=dict(spec.env),
            timeout_s=spec.timeout_s,
            attempts=spec.attempts,
            backoff_base=spec.backoff_base_s,
            backoff_cap=spec.backoff_cap_s,
        )
    if isinstance(spec, DownloadActionSpec):
        return DownloadAction(
            url=spec.url,
            dest=spec.dest,
            extract_to=spec.extract_to,
            strip_components=spec.strip_components,
            keep_archive=spec.keep_archive,
            attempts=spec.attempts,
            backoff_base=spec.backoff_base_s,
            backoff_cap=spec.backoff_cap_s,
        )
    if isinstance(spec, EnvActionSpec):
        return EnvAction(
            variables=dict(spec.variables), path_prepend=list(spec.path_prepend)
        )
    raise DefinitionError(f"Unsupported action kind: {type(spec).__name__}")


def build_stages(spec: PipelineSpec) -> list[Stage]:
    return [
        Stage(
            name=s.name,
            action=build_action(s.action),
            inputs=s.inputs,
            outputs=s.outputs,
            cwd=s.cwd,
            exports=s.exports,
            description=s.description,
        )
        for s in spec.stages
    ]


def initial_env(
    spec: PipelineSpec,
    *,
    work_root: Path,
    overrides: Mapping[str, str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """
    Build the environment the first stage sees:
    inherited process env (if enabled) < WORKSPACE < definition env < overrides.

    Definition values may refer to earlier variables (`${WORKSPACE}/kernel`).
    """
    env: dict[str, str] = {}
    if spec.inherit_env:
        env.update(os.environ if base_env is None else base_env)
    env[WORKSPACE_VAR] = str(Path(work_root).resolve())

    overrides = dict(overrides or {})
    env.update(overrides)
    for k, v in spec.env.items():
        if k not in overrides:
            env[k] = expand_vars(v, env)
    return env


def deliverable_paths(
    spec: PipelineSpec, env: Mapping[str, str], *, work_root: Path
) -> list[Path]:
    return [resolve_path(t, env, Path(work_root)) for t in spec.deliverables]
