from __future__ import annotations

import os
import tarfile
from collections import deque
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator

import httpx
from kbuild_pipeline.core import (
    ActionCancelled,
    ensure_parent,
    make_tmp_file_for,
    monotonic_ms,
    safe_unlink,
)

from .base import ActionContext, ActionOutcome
from .http import HttpFetchError, make_http_client, stream_get_to_file_with_retries


def _strip(name: str, n: int) -> str | None:
    parts = PurePosixPath(name).parts
    if len(parts) <= n:
        return None
    return PurePosixPath(*parts[n:]).as_posix()


def extract_tar(
    archive: Path,
    target: Path,
    *,
    strip_components: int = 0,
    check: Callable[[], None] | None = None,
) -> int:
    """
    Extract `archive` into `target` like `tar -xf ... --strip-components=N`.

    `check` runs before each member is extracted. Returns the number of
    extracted members.
    """
    target.mkdir(parents=True, exist_ok=True)
    count = 0

    def _members(tar: tarfile.TarFile) -> Iterator[tarfile.TarInfo]:
        nonlocal count
        for m in tar.getmembers():
            name = _strip(m.name, strip_components)
            if name is None:
                continue
            m.name = name
            if m.islnk():
                link = _strip(m.linkname, strip_components)
                if link is None:
                    continue
                m.linkname = link
            if check is not None:
                check()
            count += 1
            yield m

    with tarfile.open(archive, "r:*") as tar:
        tar.extractall(target, members=_members(tar), filter="data")
    return count


@dataclass(slots=True)
class DownloadAction:
    """
    Fetch `url` to `dest` with bounded retries, optionally unpacking it.

    Network and archive failures are reported as a non-zero outcome so the
    runner treats them like any other failed external step.
    """

    url: str
    dest: str
    extract_to: str | None = None
    strip_components: int = 0
    keep_archive: bool = False
    attempts: int = 3
    backoff_base: float = 2.0
    backoff_cap: float = 30.0
    transport: httpx.BaseTransport | None = None

    def describe(self) -> str:
        return f"download {self.url}"

    def execute(self, ctx: ActionContext) -> ActionOutcome:
        t0 = monotonic_ms()
        url = ctx.expand(self.url)
        dest = ctx.resolve(self.dest)
        tail: deque[str] = deque(maxlen=ctx.tail_lines)

        ensure_parent(ctx.log_path)
        with ctx.log_path.open("a", encoding="utf-8") as log_f:

            def _note(line: str) -> None:
                tail.append(line)
                log_f.write(line + "\n")
                ctx.logger.info("download.progress", message=line)

            def _fail(line: str) -> ActionOutcome:
                _note(line)
                return ActionOutcome(
                    exit_code=1,
                    output_tail=list(tail),
                    duration_ms=monotonic_ms() - t0,
                    command=f"download {url}",
                )

            def _check_cancel() -> None:
                if ctx.cancel.cancelled:
                    raise ActionCancelled(f"[{ctx.stage}] cancelled ({ctx.cancel.reason})")

            _note(f"GET {url} -> {dest}")
            tmp = make_tmp_file_for(dest)
            try:
                with make_http_client(transport=self.transport) as client:
                    res = stream_get_to_file_with_retries(
                        client,
                        url=url,
                        dest_path=tmp,
                        max_attempts=self.attempts,
                        backoff_base=self.backoff_base,
                        backoff_cap=self.backoff_cap,
                        sleep=lambda seconds: ctx.cancel.wait(seconds),
                        check=_check_cancel,
                    )
                os.replace(tmp, dest)
            except (HttpFetchError, httpx.HTTPError) as e:
                safe_unlink(tmp)
                return _fail(f"download failed: {e}")

            _check_cancel()
            _note(
                f"downloaded {res.bytes_written} bytes from {res.final_url} "
                f"(attempts={res.attempts})"
            )

            if self.extract_to is not None:
                target = ctx.resolve(self.extract_to)
                try:
                    count = extract_tar(
                        dest,
                        target,
                        strip_components=self.strip_components,
                        check=_check_cancel,
                    )
                except (tarfile.TarError, OSError) as e:
                    return _fail(f"extract failed: {type(e).__name__}: {e}")
                _note(f"extracted {count} members to {target}")
                if not self.keep_archive:
                    safe_unlink(dest)

        return ActionOutcome(
            exit_code=0,
            output_tail=list(tail),
            attempts=res.attempts,
            duration_ms=monotonic_ms() - t0,
            command=f"download {url}",
        )
