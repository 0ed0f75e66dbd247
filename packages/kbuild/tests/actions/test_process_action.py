from __future__ import annotations

import os
import shutil
import sys
import threading
from pathlib import Path

import pytest
from kbuild_pipeline.actions import ActionContext, ProcessAction
from kbuild_pipeline.core import ActionCancelled, CancelToken, get_logger


def _ctx(tmp_path: Path, env: dict[str, str] | None = None, **kw) -> ActionContext:
    return ActionContext(
        stage="s",
        env=dict(os.environ) if env is None else env,
        cwd=tmp_path,
        log_path=tmp_path / "logs" / "00-s.log",
        env_file=tmp_path / "env" / "00-s.env",
        path_file=tmp_path / "env" / "00-s.path",
        logger=get_logger("test"),
        cancel=kw.pop("cancel", CancelToken()),
        **kw,
    )


def _py(code: str, *args: str) -> list[str]:
    return [sys.executable, "-c", code, *args]


def test_merged_output_goes_to_log_and_tail(tmp_path: Path) -> None:
    action = ProcessAction(
        argv=_py("import sys; print('hello', flush=True); sys.stderr.write('oops\\n'); sys.exit(3)")
    )
    ctx = _ctx(tmp_path)
    out = action.execute(ctx)

    assert out.exit_code == 3
    assert not out.ok
    assert out.output_tail == ["hello", "oops"]
    assert out.attempts == 1
    log = ctx.log_path.read_text()
    assert "hello" in log and "oops" in log


def test_tail_is_bounded(tmp_path: Path) -> None:
    action = ProcessAction(argv=_py("for i in range(20): print(i)"))
    out = action.execute(_ctx(tmp_path, tail_lines=5))
    assert out.exit_code == 0
    assert out.output_tail == ["15", "16", "17", "18", "19"]


def test_argv_and_action_env_are_expanded(tmp_path: Path) -> None:
    action = ProcessAction(
        argv=_py("import os, sys; print(sys.argv[1], os.environ['OUT_DIR'])", "${ARCH}"),
        env={"OUT_DIR": "${WORKSPACE}/out"},
    )
    env = {"PATH": os.environ.get("PATH", ""), "ARCH": "arm64", "WORKSPACE": "/w"}
    out = action.execute(_ctx(tmp_path, env))
    assert out.output_tail == ["arm64 /w/out"]


def test_env_and_path_files_become_updates(tmp_path: Path) -> None:
    code = (
        "import os\n"
        "with open(os.environ['KBUILD_ENV_FILE'], 'a') as f:\n"
        "    f.write('KERNEL_ROOT=/w/kernel\\nNOTES<<EOF\\na\\nb\\nEOF\\n')\n"
        "with open(os.environ['KBUILD_PATH_FILE'], 'a') as f:\n"
        "    f.write('/w/proton-clang/bin\\n')\n"
    )
    out = ProcessAction(argv=_py(code)).execute(_ctx(tmp_path))
    assert out.ok
    assert out.env_updates == {"KERNEL_ROOT": "/w/kernel", "NOTES": "a\nb"}
    assert out.path_prepend == ["/w/proton-clang/bin"]


_BAD_ENV_LINE = (
    "import os, sys\n"
    "with open(os.environ['KBUILD_ENV_FILE'], 'a') as f:\n"
    "    f.write('not a line\\n')\n"
    "print('make: *** [Image] Error 2', flush=True)\n"
    "sys.exit(int(sys.argv[1]))\n"
)


def test_malformed_env_file_keeps_the_exit_status(tmp_path: Path) -> None:
    out = ProcessAction(argv=_py(_BAD_ENV_LINE, "3")).execute(_ctx(tmp_path))
    assert out.exit_code == 3
    assert out.output_tail[0] == "make: *** [Image] Error 2"
    assert "invalid environment line" in out.output_tail[-1]
    assert out.env_updates == {}


def test_malformed_env_file_after_success_raises(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="invalid environment line"):
        ProcessAction(argv=_py(_BAD_ENV_LINE, "0")).execute(_ctx(tmp_path))


def test_missing_and_non_executable_commands(tmp_path: Path) -> None:
    out = ProcessAction(argv=["kbuild-definitely-not-installed"]).execute(_ctx(tmp_path))
    assert out.exit_code == 127
    assert "command not found" in out.output_tail[-1]

    script = tmp_path / "build_ksu_module.sh"
    script.write_text("#!/bin/sh\necho hi\n")
    script.chmod(0o644)
    out = ProcessAction(argv=[str(script)]).execute(_ctx(tmp_path))
    assert out.exit_code == 126


def test_timeout_terminates_process_group(tmp_path: Path) -> None:
    action = ProcessAction(
        argv=_py("import time; print('start', flush=True); time.sleep(60)"),
        timeout_s=0.5,
    )
    out = action.execute(_ctx(tmp_path, terminate_grace_s=2.0))
    assert out.exit_code == 124
    assert out.output_tail[0] == "start"
    assert out.output_tail[-1] == "timed out after 0.5s"


def test_retries_until_success(tmp_path: Path) -> None:
    code = (
        "import pathlib, sys\n"
        "p = pathlib.Path('count')\n"
        "n = int(p.read_text()) + 1 if p.exists() else 1\n"
        "p.write_text(str(n))\n"
        "sys.exit(0 if n >= 2 else 1)\n"
    )
    action = ProcessAction(argv=_py(code), attempts=3, backoff_base=0.0)
    out = action.execute(_ctx(tmp_path))
    assert out.ok
    assert out.attempts == 2
    assert (tmp_path / "count").read_text() == "2"


def test_retries_are_bounded(tmp_path: Path) -> None:
    code = (
        "import pathlib\n"
        "p = pathlib.Path('count')\n"
        "p.write_text(str(int(p.read_text()) + 1 if p.exists() else 1))\n"
        "raise SystemExit(4)\n"
    )
    action = ProcessAction(argv=_py(code), attempts=2, backoff_base=0.0)
    out = action.execute(_ctx(tmp_path))
    assert out.exit_code == 4
    assert out.attempts == 2
    assert (tmp_path / "count").read_text() == "2"


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
def test_background_leftovers_are_reaped(tmp_path: Path) -> None:
    action = ProcessAction(script="(sleep 30; echo late) &\necho early\n")
    out = action.execute(_ctx(tmp_path, terminate_grace_s=0.1))

    assert out.ok
    assert out.output_tail == ["early"]
    assert not [t for t in threading.enumerate() if t.name == "output-s"]
    assert (tmp_path / "logs" / "00-s.log").read_text().endswith("early\n")


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
def test_script_runs_with_errexit(tmp_path: Path) -> None:
    action = ProcessAction(script='echo "cc=$CC"\nfalse\necho unreachable\n')
    env = {"PATH": os.environ.get("PATH", ""), "CC": "clang"}
    out = action.execute(_ctx(tmp_path, env))
    assert out.exit_code == 1
    assert out.output_tail == ["cc=clang"]
    assert action.describe() == 'bash script: echo "cc=$CC"'


def test_cancelled_token_stops_before_spawning(tmp_path: Path) -> None:
    token = CancelToken()
    token.cancel(reason="SIGTERM")
    with pytest.raises(ActionCancelled):
        ProcessAction(argv=_py("print('x')")).execute(_ctx(tmp_path, cancel=token))


def test_validation() -> None:
    with pytest.raises(ValueError):
        ProcessAction()
    with pytest.raises(ValueError):
        ProcessAction(argv=["make"], script="make")
    with pytest.raises(ValueError):
        ProcessAction(argv=[])
    with pytest.raises(ValueError):
        ProcessAction(argv=["make"], attempts=0)
