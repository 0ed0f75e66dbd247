from __future__ import annotations

import os
import platform
import sys
import uuid
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as dist_version

from .time import utc_stamp

DIST_NAME = "kbuild-pipeline"


def safe_dist_version(dist_name: str = DIST_NAME) -> str:
    try:
        return dist_version(dist_name)
    except PackageNotFoundError:
        return "0.0.0+unknown"


def new_run_id() -> str:
    """
    `<utc stamp>-<8 hex>`: run directories sort in start order.
    """
    return f"{utc_stamp()}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True, slots=True)
class RunProvenance:
    """
    Where and how a run was started. Written into run_report.json.
    """

    run_id: str
    started_at_utc: str
    hostname: str = field(default_factory=platform.node)
    user: str | None = field(default_factory=lambda: os.environ.get("USER"))
    pid: int = field(default_factory=os.getpid)
    cwd: str = field(default_factory=os.getcwd)
    argv: list[str] = field(default_factory=lambda: list(sys.argv))
    python: str = field(default_factory=platform.python_version)
    system: str = field(default_factory=platform.platform)
    kbuild_version: str = field(default_factory=safe_dist_version)
