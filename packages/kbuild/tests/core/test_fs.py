from __future__ import annotations

import os
from pathlib import Path

from kbuild_pipeline.core import fs


def test_atomic_write_text_replaces_content(tmp_path: Path) -> None:
    p = tmp_path / "d1" / "sample.txt"
    fs.atomic_write_text(p, "hello\n")
    assert p.read_text() == "hello\n"

    fs.atomic_write_text(p, "updated")
    assert p.read_text() == "updated"
    assert [x.name for x in p.parent.iterdir()] == ["sample.txt"]


def test_copy_or_hardlink_overwrites_existing(tmp_path: Path) -> None:
    src = tmp_path / "a" / "file.txt"
    fs.ensure_parent(src)
    src.write_text("data")

    dst = tmp_path / "b" / "copied.txt"
    fs.ensure_parent(dst)
    dst.write_text("stale")

    fs.copy_or_hardlink(src, dst)
    assert dst.read_text() == "data"

    same_inode = os.stat(src).st_ino == os.stat(dst).st_ino
    assert same_inode or dst.read_text() == src.read_text()


def test_copy_path_handles_directories(tmp_path: Path) -> None:
    src = tmp_path / "tree"
    (src / "bin").mkdir(parents=True)
    (src / "bin" / "tool").write_text("#!/bin/sh\n")

    fs.copy_path(src, tmp_path / "out" / "tree")
    assert (tmp_path / "out" / "tree" / "bin" / "tool").read_text() == "#!/bin/sh\n"


def test_safe_unlink_and_tmp_file(tmp_path: Path) -> None:
    fs.safe_unlink(tmp_path / "missing")

    final = tmp_path / "x" / "archive.tar.xz"
    tmp = fs.make_tmp_file_for(final)
    assert tmp.parent == final.parent
    assert tmp.exists() and tmp.name.endswith(".part")
    fs.safe_unlink(tmp)
    assert not tmp.exists()
