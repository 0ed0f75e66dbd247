from .cancel import CancelToken, cancel_on_signals
from .config import (
    ENV_FILE_VAR,
    PATH_FILE_VAR,
    WORKSPACE_VAR,
    Settings,
    load_settings,
)
from .errors import (
    ActionCancelled,
    ActionError,
    DefinitionError,
    ErrorRecord,
    InternalError,
    MissingInputError,
    MissingOutputError,
    PipelineError,
    ProcessExitError,
    RunCancelled,
    StageError,
    StageFailure,
    error_record_from_exc,
)
from .envfile import (
    expand_vars,
    is_valid_name,
    parse_env_file,
    parse_path_file,
    unresolved_vars,
)
from .fs import (
    atomic_write_text,
    copy_or_hardlink,
    copy_path,
    ensure_parent,
    fsync_dir,
    make_tmp_file_for,
    safe_unlink,
)
from .hashing import FileDigest, sha256_bytes, sha256_file, sha256_tree, write_sha256sums
from .json import append_jsonl, atomic_write_json, iter_jsonl, read_json
from .logging import ILogger, bind, clear_bindings, configure_logging, get_logger
from .paths import RunLayout
from .provenance import RunProvenance, new_run_id, safe_dist_version
from .retry import DeterministicExponentialBackoff
from .time import format_duration_ms, monotonic_ms, utc_now_iso, utc_stamp

__all__ = [
    "CancelToken",
    "cancel_on_signals",
    "expand_vars",
    "is_valid_name",
    "parse_env_file",
    "parse_path_file",
    "unresolved_vars",
    "ENV_FILE_VAR",
    "PATH_FILE_VAR",
    "WORKSPACE_VAR",
    "Settings",
    "load_settings",
    "ActionCancelled",
    "ActionError",
    "DefinitionError",
    "ErrorRecord",
    "InternalError",
    "MissingInputError",
    "MissingOutputError",
    "PipelineError",
    "ProcessExitError",
    "RunCancelled",
    "StageError",
    "StageFailure",
    "error_record_from_exc",
    "atomic_write_text",
    "copy_or_hardlink",
    "copy_path",
    "ensure_parent",
    "fsync_dir",
    "make_tmp_file_for",
    "safe_unlink",
    "FileDigest",
    "sha256_bytes",
    "sha256_file",
    "sha256_tree",
    "write_sha256sums",
    "append_jsonl",
    "iter_jsonl",
    "atomic_write_json",
    "read_json",
    "ILogger",
    "bind",
    "clear_bindings",
    "configure_logging",
    "get_logger",
    "RunLayout",
    "RunProvenance",
    "safe_dist_version",
    "new_run_id",
    "DeterministicExponentialBackoff",
    "monotonic_ms",
    "utc_now_iso",
    "utc_stamp",
    "format_duration_ms",
]
