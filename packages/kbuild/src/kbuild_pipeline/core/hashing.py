import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

SUMS_FILE = "SHA256SUMS"


@dataclass(frozen=True)
class FileDigest:
    sha256: str
    bytes: int


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def sha256_file(path: Path, *, chunk_bytes: int = 1024 * 1024) -> FileDigest:
    h = hashlib.sha256()
    total = 0
    with Path(path).open("rb") as f:
        while chunk := f.read(chunk_bytes):
            h.update(chunk)
            total += len(chunk)
    return FileDigest(sha256=h.hexdigest(), bytes=total)


def sha256_tree(root: Path) -> FileDigest:
    """
    Digest of a directory artifact: every regular file's relative path and
    content digest, in sorted order. Symlinks are hashed by their target text.
    """
    root = Path(root)
    h = hashlib.sha256()
    total = 0
    entries: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        entries.extend(Path(dirpath) / n for n in sorted(filenames))

    for p in entries:
        rel = p.relative_to(root).as_posix()
        if p.is_symlink():
            line = f"{rel}\0->{os.readlink(p)}\n"
        else:
            d = sha256_file(p)
            total += d.bytes
            line = f"{rel}\0{d.sha256}\n"
        h.update(line.encode("utf-8"))
    return FileDigest(sha256=h.hexdigest(), bytes=total)


def write_sha256sums(dest_dir: Path, files: Iterable[Path]) -> Path:
    """
    Write `sha256sum -c` compatible SHA256SUMS for the regular files in
    `dest_dir`. Directories are skipped.
    """
    dest_dir = Path(dest_dir)
    lines = [
        f"{sha256_file(p).sha256}  {p.relative_to(dest_dir).as_posix()}\n"
        for p in sorted(Path(f) for f in files)
        if p.is_file()
    ]
    out = dest_dir / SUMS_FILE
    out.write_text("".join(lines), encoding="utf-8")
    return out
