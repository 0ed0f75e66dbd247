from __future__ import annotations

import os
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import IO

from kbuild_pipeline.core import (
    ENV_FILE_VAR,
    PATH_FILE_VAR,
    ActionCancelled,
    DeterministicExponentialBackoff,
    ensure_parent,
    monotonic_ms,
    parse_env_file,
    parse_path_file,
    safe_unlink,
)
from tenacity import Retrying, retry_if_result, stop_after_attempt

from .base import ActionContext, ActionOutcome

_POLL_S = 0.2

# Shell conventions for failures that never produce a child exit status.
EXIT_TIMEOUT = 124
EXIT_NOT_EXECUTABLE = 126
EXIT_NOT_FOUND = 127


@dataclass(slots=True)
class ProcessAction:
    """
    Run an external command, stream its merged stdout/stderr to the stage log
    and keep the last lines for failure reports.

    Exactly one of `argv` (items are `$VAR`-expanded) or `script` (handed to
    `shell -eo pipefail -c`, which expands variables itself) must be set.
    """

    argv: list[str] | None = None
    script: str | None = None
    shell: str = "bash"
    env: dict[str, str] = field(default_factory=dict)
    timeout_s: float | None = None
    attempts: int = 1
    backoff_base: float = 2.0
    backoff_cap: float = 30.0

    def __post_init__(self) -> None:
        if (self.argv is None) == (self.script is None):
            raise ValueError("ProcessAction needs exactly one of argv or script")
        if self.argv is not None and not self.argv:
            raise ValueError("ProcessAction.argv must not be empty")
        if self.attempts < 1:
            raise ValueError("ProcessAction.attempts must be >= 1")

    def describe(self) -> str:
        if self.argv is not None:
            return shlex.join(self.argv)
        assert self.script is not None
        first = next((ln.strip() for ln in self.script.splitlines() if ln.strip()), "")
        return f"{self.shell} script: {first}"

    def command_argv(self, ctx: ActionContext) -> list[str]:
        if self.argv is not None:
            return [ctx.expand(a) for a in self.argv]
        assert self.script is not None
        return [self.shell, "-eo", "pipefail", "-c", self.script]

    def execute(self, ctx: ActionContext) -> ActionOutcome:
        t0 = monotonic_ms()
        argv = self.command_argv(ctx)

        if self.attempts == 1:
            outcome = self._attempt(ctx, argv, 1)
        else:
            outcome = self._with_retries(ctx, argv)

        outcome.duration_ms = monotonic_ms() - t0
        return outcome

    def _with_retries(self, ctx: ActionContext, argv: list[str]) -> ActionOutcome:
        attempt_no = 0

        def _once() -> ActionOutcome:
            nonlocal attempt_no
            attempt_no += 1
            return self._attempt(ctx, argv, attempt_no)

        def _before_sleep(retry_state) -> None:
            last = retry_state.outcome.result() if retry_state.outcome else None
            sleep = retry_state.next_action.sleep if retry_state.next_action else None
            ctx.logger.warning(
                "action.retry",
                attempt=retry_state.attempt_number,
                max_attempts=self.attempts,
                exit_code=last.exit_code if last else None,
                sleep_s=sleep,
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=DeterministicExponentialBackoff(
                base=self.backoff_base, cap=self.backoff_cap
            ),
            retry=retry_if_result(lambda o: not o.ok),
            retry_error_callback=lambda state: state.outcome.result(),
            before_sleep=_before_sleep,
            sleep=lambda seconds: ctx.cancel.wait(seconds),
        )
        return retrying(_once)

    def _attempt(
        self, ctx: ActionContext, argv: list[str], attempt_no: int
    ) -> ActionOutcome:
        if ctx.cancel.cancelled:
            raise ActionCancelled(f"[{ctx.stage}] cancelled before attempt {attempt_no}")

        command = shlex.join(argv) if self.argv is not None else self.describe()

        # Fresh env/path files per attempt.
        for p in (ctx.env_file, ctx.path_file):
            ensure_parent(p)
            safe_unlink(p)
            p.touch()

        child_env = dict(ctx.env)
        child_env.update({k: ctx.expand(v) for k, v in self.env.items()})
        child_env[ENV_FILE_VAR] = str(ctx.env_file)
        child_env[PATH_FILE_VAR] = str(ctx.path_file)

        tail: deque[str] = deque(maxlen=ctx.tail_lines)
        ensure_parent(ctx.log_path)

        with ctx.log_path.open("a", encoding="utf-8") as log_f:
            log_f.write(f"$ {command}  # attempt {attempt_no}, cwd={ctx.cwd}\n")
            log_f.flush()

            ctx.logger.info("action.start", command=command, attempt=attempt_no)
            try:
                proc = subprocess.Popen(
                    argv,
                    cwd=ctx.cwd,
                    env=child_env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                    start_new_session=True,
                )
            except FileNotFoundError:
                msg = f"command not found: {argv[0]}"
                log_f.write(msg + "\n")
                return ActionOutcome(
                    exit_code=EXIT_NOT_FOUND,
                    output_tail=[msg],
                    attempts=attempt_no,
                    command=command,
                )
            except PermissionError:
                msg = f"permission denied: {argv[0]}"
                log_f.write(msg + "\n")
                return ActionOutcome(
                    exit_code=EXIT_NOT_EXECUTABLE,
                    output_tail=[msg],
                    attempts=attempt_no,
                    command=command,
                )

            assert proc.stdout is not None
            reader = threading.Thread(
                target=_pump_output,
                args=(proc.stdout, log_f, tail, ctx),
                name=f"output-{ctx.stage}",
                daemon=True,
            )
            reader.start()

            exit_code, status = self._wait(ctx, proc)
            _drain_reader(ctx, proc, reader)

            if status == "cancelled":
                log_f.write("cancelled\n")
                raise ActionCancelled(f"[{ctx.stage}] cancelled ({ctx.cancel.reason})")

            if status == "timeout":
                msg = f"timed out after {self.timeout_s}s"
                tail.append(msg)
                log_f.write(msg + "\n")

        ctx.logger.info("action.exit", exit_code=exit_code, attempt=attempt_no)

        try:
            env_updates = parse_env_file(ctx.env_file)
            path_prepend = parse_path_file(ctx.path_file)
        except ValueError as e:
            if exit_code == 0:
                raise
            # A failed command keeps its own exit status as the failure.
            ctx.logger.warning("action.env_file_invalid", error=str(e), exit_code=exit_code)
            tail.append(f"ignored environment updates: {e}")
            env_updates, path_prepend = {}, []

        return ActionOutcome(
            exit_code=exit_code,
            output_tail=list(tail),
            env_updates=env_updates,
            path_prepend=path_prepend,
            attempts=attempt_no,
            command=command,
        )

    def _wait(self, ctx: ActionContext, proc: subprocess.Popen) -> tuple[int, str]:
        deadline = (
            time.monotonic() + self.timeout_s if self.timeout_s is not None else None
        )
        while True:
            try:
                code = proc.wait(timeout=_POLL_S)
                break
            except subprocess.TimeoutExpired:
                pass
            except KeyboardInterrupt:
                # The child runs in its own session and never sees the SIGINT.
                ctx.cancel.cancel(reason="SIGINT")

            if ctx.cancel.cancelled:
                ctx.logger.warning("action.cancel", pid=proc.pid, reason=ctx.cancel.reason)
                terminate_process_group(proc, grace_s=ctx.terminate_grace_s)
                return proc.returncode or 0, "cancelled"

            if deadline is not None and time.monotonic() >= deadline:
                ctx.logger.warning("action.timeout", pid=proc.pid, timeout_s=self.timeout_s)
                terminate_process_group(proc, grace_s=ctx.terminate_grace_s)
                return EXIT_TIMEOUT, "timeout"

        if code < 0:
            # Killed by signal N: report it the way a shell would.
            code = 128 - code
        return code, "exited"


def _pump_output(
    stream: IO[str], log_f: IO[str], tail: deque[str], ctx: ActionContext
) -> None:
    try:
        for raw in stream:
            line = raw.rstrip("\n")
            log_f.write(line + "\n")
            tail.append(line)
            ctx.logger.debug("action.output", line=line)
        log_f.flush()
    finally:
        stream.close()


def _drain_reader(
    ctx: ActionContext, proc: subprocess.Popen, reader: threading.Thread
) -> None:
    """
    Wait for the output reader to reach EOF. Background processes left behind
    by the command keep the pipe open; their process group is terminated.
    """
    reader.join(timeout=max(ctx.terminate_grace_s, 1.0))
    if not reader.is_alive():
        return

    ctx.logger.warning("action.orphans", pgid=proc.pid)
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            break
        reader.join(timeout=ctx.terminate_grace_s)
        if not reader.is_alive():
            return
    reader.join()


def terminate_process_group(proc: subprocess.Popen, *, grace_s: float) -> None:
    """
    SIGTERM the child's process group, then SIGKILL whatever is left after
    `grace_s`. The child must have been started with start_new_session=True.
    """
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return

    try:
        proc.wait(timeout=grace_s)
        return
    except subprocess.TimeoutExpired:
        pass

    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    proc.wait()
