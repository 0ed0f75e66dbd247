from __future__ import annotations

import logging
import sys
from typing import Any, Protocol, runtime_checkable

import structlog
from rich.logging import RichHandler
from structlog.contextvars import bind_contextvars, clear_contextvars, merge_contextvars

_CONFIGURED = False

# Third-party loggers that are chatty at INFO (one line per HTTP request).
_NOISY = ("httpx", "httpcore")

# Context keys rendered first on console lines.
_KEY_ORDER = ["event", "run_id", "stage"]


@runtime_checkable
class ILogger(Protocol):
    def debug(self, event: str, **kw: Any) -> Any: ...
    def info(self, event: str, **kw: Any) -> Any: ...
    def warning(self, event: str, **kw: Any) -> Any: ...
    def error(self, event: str, **kw: Any) -> Any: ...
    def exception(self, event: str, **kw: Any) -> Any: ...
    def bind(self, **kw: Any) -> "ILogger": ...


def _level_number(level: str | int) -> int:
    if isinstance(level, int):
        return level
    n = logging.getLevelName(level.upper())
    if not isinstance(n, int):
        raise ValueError(f"Unknown log level: {level}")
    return n


def configure_logging(
    *, level: str | int = "INFO", fmt: str = "console", force: bool = False
) -> None:
    """
    Route structlog through stdlib logging.

    console: rich handler, key=value lines with event/run_id/stage first.
    json:    one JSON object per line on stdout.

    Only the first call takes effect unless `force` is set.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    level_no = _level_number(level)

    shared: list[Any] = [
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    handler: logging.Handler
    if fmt == "console":
        handler = RichHandler(
            rich_tracebacks=True,
            markup=False,
            show_time=False,
            show_path=False,
        )
        renderer: Any = structlog.processors.KeyValueRenderer(
            key_order=_KEY_ORDER, drop_missing=True
        )
    elif fmt == "json":
        handler = logging.StreamHandler(stream=sys.stdout)
        renderer = structlog.processors.JSONRenderer()
    else:
        raise ValueError(f"Unknown log format: {fmt}")

    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level_no)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level_no)
    root.addHandler(handler)

    for name in _NOISY:
        logging.getLogger(name).setLevel(max(level_no, logging.WARNING))

    structlog.configure(
        processors=[*shared, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level_no),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _CONFIGURED = True


def get_logger(name: str = "kbuild_pipeline") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind(**values: Any) -> None:
    bind_contextvars(**values)


def clear_bindings() -> None:
    clear_contextvars()
