from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

import httpx
import structlog
from kbuild_pipeline.core import DeterministicExponentialBackoff, safe_unlink
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt

_RETRYABLE_STATUSES: set[int] = {408, 429, 500, 502, 503, 504}

log = structlog.get_logger(__name__)


class HttpFetchError(RuntimeError):
    """Base HTTP fetch error."""


class HttpStatusError(HttpFetchError):
    """
    Non-retryable HTTP status (e.g., 400/401/403/404) or any status not in allowed.
    """

    def __init__(
        self,
        *,
        method: str,
        url: str,
        status_code: int,
        body_snippet: str | None,
    ) -> None:
        msg = f"HTTP {status_code} for {method} {url}"
        if body_snippet:
            msg += f" (body: {body_snippet})"
        super().__init__(msg)
        self.method = method
        self.url = url
        self.status_code = status_code


class HttpRetriesExceeded(HttpFetchError):
    def __init__(
        self, *, method: str, url: str, attempts: int, last_error: BaseException
    ) -> None:
        super().__init__(
            f"HTTP retries exceeded for {method} {url} (attempts={attempts}): {last_error}"
        )
        self.method = method
        self.url = url
        self.attempts = attempts
        self.last_error = last_error


class RetryableHttpStatus(Exception):
    def __init__(self, *, method: str, url: str, status_code: int) -> None:
        super().__init__(f"HTTP {status_code} for {method} {url}")
        self.method = method
        self.url = url
        self.status_code = status_code


def make_http_client(
    *,
    timeout: httpx.Timeout | None = None,
    follow_redirects: bool = True,
    user_agent: str = "kbuild-pipeline/0.1",
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    t = timeout or httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=10.0)
    return httpx.Client(
        timeout=t,
        follow_redirects=follow_redirects,
        headers={"User-Agent": user_agent},
        transport=transport,
    )


def is_retryable_status(code: int) -> bool:
    return code in _RETRYABLE_STATUSES


def _retrying(
    *,
    method: str,
    url: str,
    max_attempts: int,
    base: float,
    cap: float,
    sleep: Callable[[float], object] | None,
) -> Retrying:
    def _before_sleep(retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        log.warning(
            "http.retry",
            method=method,
            url=url,
            attempt=retry_state.attempt_number,
            sleep_s=delay,
            error=repr(exc) if exc else None,
        )

    kw: dict[str, object] = {}
    if sleep is not None:
        kw["sleep"] = sleep

    return Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=DeterministicExponentialBackoff(base=base, cap=cap),
        retry=retry_if_exception_type(
            (httpx.TimeoutException, httpx.TransportError, RetryableHttpStatus)
        ),
        reraise=False,
        before_sleep=_before_sleep,
        **kw,
    )


def _body_snippet(resp: httpx.Response, *, limit: int = 200) -> str | None:
    """
    Bounded snippet of a streamed error response for debugging.
    """
    try:
        buf = bytearray()
        for chunk in resp.iter_bytes(chunk_size=min(4096, limit * 4)):
            buf.extend(chunk)
            if len(buf) >= limit * 4:
                break
    except httpx.HTTPError:
        return None
    s = bytes(buf).decode("utf-8", errors="replace")[:limit].strip()
    return s or None


@dataclass(frozen=True, slots=True)
class HttpDownloadResult:
    status_code: int
    final_url: str
    content_type: str | None
    bytes_written: int
    attempts: int


def stream_get_to_file_with_retries(
    client: httpx.Client,
    *,
    url: str,
    dest_path: os.PathLike[str] | str,
    headers: Mapping[str, str] | None = None,
    allowed_statuses: Iterable[int] = (200,),
    max_attempts: int = 3,
    chunk_bytes: int = 1024 * 128,
    backoff_base: float = 0.5,
    backoff_cap: float = 4.0,
    sleep: Callable[[float], object] | None = None,
    check: Callable[[], None] | None = None,
) -> HttpDownloadResult:
    """
    Stream GET into dest_path, retrying transport errors and retryable statuses.

    `check` runs before every request and between chunks; an exception it
    raises ends the download without further retries.

    Note: Caller should pass a temp path; the final rename belongs to the caller.
    """
    dest = Path(dest_path)
    allowed = set(allowed_statuses)
    attempt_no = 0

    def _check() -> None:
        if check is not None:
            check()

    def _do() -> HttpDownloadResult:
        safe_unlink(dest)
        _check()

        with client.stream("GET", url, headers=headers) as resp:
            if resp.status_code not in allowed:
                if is_retryable_status(resp.status_code):
                    raise RetryableHttpStatus(
                        method="GET", url=url, status_code=resp.status_code
                    )
                raise HttpStatusError(
                    method="GET",
                    url=url,
                    status_code=resp.status_code,
                    body_snippet=_body_snippet(resp),
                )

            dest.parent.mkdir(parents=True, exist_ok=True)

            total = 0
            try:
                with dest.open("wb") as f:
                    for chunk in resp.iter_bytes(chunk_size=chunk_bytes):
                        _check()
                        if not chunk:
                            continue
                        f.write(chunk)
                        total += len(chunk)
                    f.flush()
                    os.fsync(f.fileno())
            except BaseException:
                safe_unlink(dest)
                raise

            return HttpDownloadResult(
                status_code=resp.status_code,
                final_url=str(resp.url),
                content_type=resp.headers.get("Content-Type"),
                bytes_written=total,
                attempts=attempt_no,
            )

    retrying = _retrying(
        method="GET",
        url=url,
        max_attempts=max_attempts,
        base=backoff_base,
        cap=backoff_cap,
        sleep=sleep,
    )

    try:
        for attempt in retrying:
            attempt_no = attempt.retry_state.attempt_number
            with attempt:
                return _do()

    except RetryError as re:
        last = re.last_attempt.exception()
        safe_unlink(dest)
        raise HttpRetriesExceeded(
            method="GET",
            url=url,
            attempts=re.last_attempt.attempt_number,
            last_error=last or Exception("unknown"),
        ) from last

    except BaseException:
        safe_unlink(dest)
        raise

    raise RuntimeError("unreachable")
