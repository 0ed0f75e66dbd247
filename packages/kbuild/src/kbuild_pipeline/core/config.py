from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LogFormat = Literal["json", "console"]

# Files handed to process actions; lines appended to them update the run env.
ENV_FILE_VAR = "KBUILD_ENV_FILE"
PATH_FILE_VAR = "KBUILD_PATH_FILE"

# Root of the working tree as seen by pipeline definitions.
WORKSPACE_VAR = "WORKSPACE"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KBUILD_",
        env_file=".env",
        extra="ignore",
    )

    work_root: Path = Field(default=Path("."))
    run_root: Path = Field(default=Path("_runs"))
    definition: Optional[Path] = Field(default=None)
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default="console")

    output_tail_lines: int = Field(default=40, ge=1)
    terminate_grace_s: float = Field(default=10.0, ge=0)
    hash_artifacts: bool = Field(default=True)


@lru_cache(maxsize=1)
def load_settings() -> Settings:
    return Settings()
