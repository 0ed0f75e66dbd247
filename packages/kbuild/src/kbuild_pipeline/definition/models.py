from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    model_validator,
)

IdPattern = r"^[a-z0-9][a-z0-9_\-\.]*[a-z0-9]$"
VarPattern = r"^[A-Za-z_][A-Za-z0-9_]*$"

StageName = Annotated[
    str,
    StringConstraints(min_length=2, max_length=80, pattern=IdPattern),
]
VarName = Annotated[str, StringConstraints(min_length=1, pattern=VarPattern)]
PathTemplate = Annotated[str, StringConstraints(min_length=1)]


class ProcessActionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["process"]
    argv: Optional[list[str]] = Field(default=None, min_length=1)
    script: Optional[str] = Field(default=None, min_length=1)
    shell: str = "bash"
    env: dict[VarName, str] = Field(default_factory=dict)
    timeout_s: Optional[float] = Field(default=None, gt=0)
    attempts: int = Field(default=1, ge=1, le=10)
    backoff_base_s: float = Field(default=2.0, ge=0)
    backoff_cap_s: float = Field(default=30.0, ge=0)

    @model_validator(mode="after")
    def _exactly_one_command(self) -> "ProcessActionSpec":
        if (self.argv is None) == (self.script is None):
            raise ValueError("process action must set exactly one of {argv, script}")
        return self


class DownloadActionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["download"]
    url: str = Field(..., min_length=1, examples=["https://example.org/toolchain.tar.xz"])
    dest: PathTemplate
    extract_to: Optional[PathTemplate] = None
    strip_components: int = Field(default=0, ge=0)
    keep_archive: bool = False
    attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_s: float = Field(default=2.0, ge=0)
    backoff_cap_s: float = Field(default=30.0, ge=0)


class EnvActionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["env"]
    variables: dict[VarName, str] = Field(default_factory=dict)
    path_prepend: list[PathTemplate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _not_empty(self) -> "EnvActionSpec":
        if not self.variables and not self.path_prepend:
            raise ValueError("env action must set variables or path_prepend")
        return self


ActionSpec = Annotated[
    Union[ProcessActionSpec, DownloadActionSpec, EnvActionSpec],
    Field(discriminator="kind"),
]


class StageSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: StageName
    description: Optional[str] = None
    action: ActionSpec
    inputs: list[PathTemplate] = Field(default_factory=list)
    outputs: list[PathTemplate] = Field(default_factory=list)
    cwd: Optional[PathTemplate] = None
    exports: dict[VarName, str] = Field(default_factory=dict)


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    spec_version: int = Field(..., ge=1, le=1)
    name: StageName
    description: Optional[str] = None
    inherit_env: bool = True
    env: dict[VarName, str] = Field(default_factory=dict)
    stages: list[StageSpec] = Field(..., min_length=1)
    deliverables: list[PathTemplate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate(self) -> "PipelineSpec":
        names = [s.name for s in self.stages]
        if len(names) != len(set(names)):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate stage names in pipeline {self.name}: {dupes}")
        return self

    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]
