import os
import shutil
import tempfile
from pathlib import Path


def ensure_parent(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def safe_unlink(path: os.PathLike[str] | str) -> None:
    try:
        Path(path).unlink(missing_ok=True)
    except OSError:
        return


def fsync_dir(parent: Path) -> None:
    """
    Ensure directory entry durability after atomic rename.
    """
    fd: int | None = None
    try:
        fd = os.open(parent, os.O_RDONLY)
        os.fsync(fd)
    finally:
        if fd is not None:
            os.close(fd)


def atomic_write_text(
    path: Path,
    text: str,
    *,
    encoding: str = "utf-8",
    newline: str = "\n",
    mode: int = 0o644,
) -> None:
    """
    Atomically write text to `path`.

    Guarantees:
      - readers either see the old complete file or the new complete file
      - temp file written in the same directory (atomic replace works)
      - file contents are fsync()'d before replace
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd: int | None = None
    tmp_path: Path | None = None

    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{path.name}.",
            suffix=".tmp",
            dir=str(path.parent),
            text=True,
        )
        tmp_path = Path(tmp_name)

        with os.fdopen(fd, "w", encoding=encoding, newline=newline) as f:
            fd = None
            f.write(text)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)

        fsync_dir(path.parent)

    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None and tmp_path.exists():
            safe_unlink(tmp_path)


def copy_or_hardlink(src: Path, dst: Path) -> None:
    """
    Prefer hardlink (O(1), no extra disk), fallback to copy2.
    """
    src = Path(src)
    dst = Path(dst)
    ensure_parent(dst)
    safe_unlink(dst)
    try:
        os.link(src, dst)
    except OSError:
        shutil.copy2(src, dst)


def copy_path(src: Path, dst: Path) -> None:
    """
    Copy a file or a whole directory tree to `dst`.
    """
    src = Path(src)
    if src.is_dir():
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
    else:
        copy_or_hardlink(src, dst)


def make_tmp_file_for(final_path: Path) -> Path:
    """
    Reserve a temp file next to final_path (same filesystem) so rename is atomic.
    """
    final_path = Path(final_path)
    final_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(
        prefix=f".{final_path.name}.", suffix=".part", dir=str(final_path.parent)
    )
    os.close(fd)
    return Path(tmp)
