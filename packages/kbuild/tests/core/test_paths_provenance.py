from __future__ import annotations

import re
from pathlib import Path
from types import SimpleNamespace

from kbuild_pipeline.core import errors, paths, provenance, retry, time


def test_run_layout_paths_and_dirs(tmp_path: Path) -> None:
    layout = paths.RunLayout.for_run(tmp_path, "abc")
    assert layout.report_json() == tmp_path / "abc" / "run_report.json"
    assert layout.stage_log(3, "build image") == tmp_path / "abc" / "logs" / "03-build_image.log"
    assert layout.stage_env_file(0, "toolchain-env").name == "00-toolchain-env.env"
    assert layout.stage_path_file(0, "toolchain-env").name == "00-toolchain-env.path"

    layout.ensure_dirs()
    assert (tmp_path / "abc" / "logs").is_dir()
    assert (tmp_path / "abc" / "env").is_dir()


def test_error_records() -> None:
    try:
        raise ValueError("boom")
    except Exception as exc:
        rec = errors.error_record_from_exc(exc)
    assert rec.kind == "ValueError"
    assert "boom" in rec.message
    assert rec.traceback and "ValueError" in rec.traceback

    err = errors.ProcessExitError("build", exit_code=2, output_tail=["cc1: error"])
    rec = errors.error_record_from_exc(err)
    assert rec.kind == "ProcessExitError"
    assert rec.details["exit_code"] == 2
    assert rec.details["output_tail"] == ["cc1: error"]

    missing = errors.MissingOutputError("build", [Path("/a"), Path("/b")])
    assert missing.path == Path("/a")
    assert "/b" in str(missing)


def test_run_ids_sort_by_start_time() -> None:
    rid1, rid2 = provenance.new_run_id(), provenance.new_run_id()
    assert rid1 != rid2
    assert re.fullmatch(r"\d{8}T\d{6}Z-[0-9a-f]{8}", rid1)

    prov = provenance.RunProvenance(run_id=rid1, started_at_utc=time.utc_now_iso())
    assert prov.pid > 0
    assert prov.kbuild_version


def test_backoff_is_deterministic() -> None:
    wait = retry.DeterministicExponentialBackoff(base=2.0, cap=5.0)
    delays = [wait(SimpleNamespace(attempt_number=n)) for n in range(0, 5)]
    assert delays == [0.0, 2.0, 4.0, 5.0, 5.0]


def test_time_helpers_format() -> None:
    assert time.utc_now_iso().endswith("Z")
    assert re.fullmatch(r"\d{8}T\d{6}Z", time.utc_stamp())
    assert time.monotonic_ms() >= 0
    assert time.format_duration_ms(850) == "850 ms"
    assert time.format_duration_ms(12_400) == "12.40 s"
    assert time.format_duration_ms(2_467_000) == "41m 07s"
