from __future__ import annotations

import json
import sys
import threading
import time
from pathlib import Path

import httpx
import pytest
from kbuild_pipeline.actions import DownloadAction, ProcessAction
from kbuild_pipeline.core import CancelToken, RunCancelled
from kbuild_pipeline.pipeline import PipelineRunner, RunnerConfig, Stage


def _runner(tmp_path: Path, token: CancelToken) -> PipelineRunner:
    cfg = RunnerConfig(run_root=tmp_path / "runs", work_root=tmp_path, terminate_grace_s=2.0)
    return PipelineRunner(cfg=cfg, cancel=token)


def test_cancel_before_first_stage(tmp_path: Path) -> None:
    token = CancelToken()
    token.cancel(reason="test")
    ran: list[str] = []

    with pytest.raises(RunCancelled) as ei:
        _runner(tmp_path, token).run([PipelineRunner.fn("a", lambda ctx: ran.append("a"))], {})

    assert ei.value.stage is None and ei.value.index == 0
    assert ran == []


def test_cancel_kills_running_process(tmp_path: Path) -> None:
    token = CancelToken()
    slow = Stage(
        name="build-image",
        action=ProcessAction(argv=[sys.executable, "-c", "import time; time.sleep(60)"]),
    )
    after = PipelineRunner.fn("after", lambda ctx: None)

    timer = threading.Timer(0.5, token.cancel, kwargs={"reason": "SIGINT"})
    timer.start()
    t0 = time.monotonic()
    try:
        with pytest.raises(RunCancelled) as ei:
            _runner(tmp_path, token).run([slow, after], {}, run_id="c1")
    finally:
        timer.cancel()

    assert time.monotonic() - t0 < 30
    assert ei.value.stage == "build-image" and ei.value.index == 0

    report = json.loads((tmp_path / "runs" / "c1" / "run_report.json").read_text())
    assert report["state"] == "aborted"
    assert report["stages"][0]["state"] == "failed"
    assert report["stages"][0]["cancelled"] is True
    assert report["stages"][1]["state"] == "pending"

    types = [
        json.loads(ln)["type"]
        for ln in (tmp_path / "runs" / "c1" / "events.jsonl").read_text().splitlines()
    ]
    assert types[-2:] == ["run.cancelled", "run.finish"]


def test_cancel_during_download_aborts_run(tmp_path: Path) -> None:
    token = CancelToken()
    requests: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(str(request.url))
        token.cancel(reason="SIGINT")
        return httpx.Response(503)

    fetch = Stage(
        name="fetch-proton-clang",
        action=DownloadAction(
            url="https://example.org/proton-clang.tar.gz",
            dest="proton-clang.tar.gz",
            attempts=3,
            backoff_base=5.0,
            transport=httpx.MockTransport(handler),
        ),
    )

    with pytest.raises(RunCancelled) as ei:
        _runner(tmp_path, token).run([fetch], {}, run_id="d1")

    assert ei.value.stage == "fetch-proton-clang"
    assert len(requests) == 1
    report = json.loads((tmp_path / "runs" / "d1" / "run_report.json").read_text())
    assert report["state"] == "aborted"
    assert report["stages"][0]["cancelled"] is True
