from __future__ import annotations

from pathlib import Path
from typing import Iterable, Mapping, Sequence

from kbuild_pipeline.core import (
    copy_path,
    expand_vars,
    sha256_file,
    sha256_tree,
    write_sha256sums,
)

from .types import ArtifactRef


def resolve_path(template: str, env: Mapping[str, str], base: Path) -> Path:
    """
    Expand `$VAR`/`${VAR}` in `template` and anchor relative results at `base`.
    """
    p = Path(expand_vars(template, env)).expanduser()
    return p if p.is_absolute() else Path(base) / p


def missing_paths(paths: Iterable[Path]) -> list[Path]:
    return [p for p in paths if not p.exists()]


def describe_artifact(path: Path, *, stage: str, with_digest: bool = True) -> ArtifactRef:
    if path.is_file():
        digest = sha256_file(path) if with_digest else None
        return ArtifactRef(
            path=str(path),
            stage=stage,
            kind="file",
            bytes=digest.bytes if digest else path.stat().st_size,
            sha256=digest.sha256 if digest else None,
        )
    if path.is_dir():
        digest = sha256_tree(path) if with_digest else None
        return ArtifactRef(
            path=str(path),
            stage=stage,
            kind="dir",
            bytes=digest.bytes if digest else None,
            sha256=digest.sha256 if digest else None,
        )
    return ArtifactRef(path=str(path), stage=stage, kind="other")


def collect_artifacts(
    paths: Sequence[Path], dest: Path, *, checksums: bool = True
) -> list[Path]:
    """
    Copy artifacts into `dest`, flattened by basename, and write SHA256SUMS
    for the collected files.

    Two artifacts with the same basename are rejected rather than overwriting
    each other.
    """
    dest = Path(dest)
    names: dict[str, Path] = {}
    for p in paths:
        prev = names.get(p.name)
        if prev is not None and prev != p:
            raise ValueError(f"Artifact name clash in {dest}: {prev} and {p}")
        names[p.name] = p

    dest.mkdir(parents=True, exist_ok=True)
    out: list[Path] = []
    for name, src in names.items():
        target = dest / name
        copy_path(src, target)
        out.append(target)

    if checksums:
        write_sha256sums(dest, out)
    return out
