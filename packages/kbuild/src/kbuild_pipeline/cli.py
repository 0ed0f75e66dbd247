from __future__ import annotations

import argparse
import dataclasses
import json
from pathlib import Path
from typing import Sequence

from kbuild_pipeline.core import (
    CancelToken,
    DefinitionError,
    RunCancelled,
    StageFailure,
    bind,
    cancel_on_signals,
    configure_logging,
    get_logger,
    is_valid_name,
    load_settings,
    new_run_id,
)
from kbuild_pipeline.definition import (
    PipelineSpec,
    build_stages,
    deliverable_paths,
    initial_env,
    load_definition,
    resolve_definition_path,
    schema_for_pipeline_spec,
)
from kbuild_pipeline.pipeline import (
    PipelineRunner,
    RunnerConfig,
    collect_artifacts,
    missing_paths,
)
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

console = Console()

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_DEFINITION = 2
EXIT_CANCELLED = 130


def _add_definition_arg(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "definition",
        nargs="?",
        default=None,
        help=(
            "Pipeline definition (JSON). "
            "If omitted: uses KBUILD_DEFINITION or ./pipeline.json."
        ),
    )


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="kbuild-pipeline")
    sub = p.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="Run a pipeline definition stage by stage")
    _add_definition_arg(run)
    run.add_argument(
        "-e",
        "--env",
        action="append",
        dest="overrides",
        default=[],
        metavar="KEY=VALUE",
        help="Environment override passed to every stage (repeatable).",
    )
    run.add_argument("--run-id", default=None, help="Run id (default: random)")
    run.add_argument("--work-root", default=None, help="Working tree (WORKSPACE)")
    run.add_argument("--run-root", default=None, help="Where run reports and logs go")
    run.add_argument(
        "--collect",
        default=None,
        metavar="DIR",
        help="Copy deliverables (or every artifact when none are declared) into DIR.",
    )

    val = sub.add_parser("validate", help="Validate a pipeline definition and list its stages")
    _add_definition_arg(val)

    sub.add_parser("schema", help="Print the JSON schema of pipeline definitions")
    return p


def _parse_overrides(parser: argparse.ArgumentParser, items: Sequence[str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in items:
        name, sep, value = item.partition("=")
        if not sep or not is_valid_name(name):
            parser.error(f"invalid --env override (expected KEY=VALUE): {item!r}")
        out[name] = value
    return out


def _stage_table(spec: PipelineSpec) -> Table:
    tbl = Table(title=spec.name, show_header=True)
    tbl.add_column("#", justify="right")
    tbl.add_column("stage")
    tbl.add_column("action")
    tbl.add_column("inputs", justify="right")
    tbl.add_column("outputs", justify="right")
    for i, st in enumerate(spec.stages):
        tbl.add_row(
            str(i),
            st.name,
            st.action.kind,
            str(len(st.inputs)),
            str(len(st.outputs)),
        )
    return tbl


def _failure_table(f: StageFailure) -> Table:
    tbl = Table(title="Failure", show_header=False, box=None)
    tbl.add_row("stage", Text(f"#{f.index} {f.stage}"))
    tbl.add_row("kind", Text(f.kind, style="bold red"))
    tbl.add_row("error", Text(str(f.error)))
    tail = f.error.details().get("output_tail") or []
    if tail:
        tbl.add_row("output", Text("\n".join(tail)))
    if f.report_path is not None:
        tbl.add_row("report", Text(str(f.report_path)))
    return tbl


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    s = load_settings()
    configure_logging(level=s.log_level, fmt=s.log_format)
    log = get_logger("kbuild_pipeline")

    if args.cmd == "schema":
        console.print_json(json.dumps(schema_for_pipeline_spec()))
        return EXIT_OK

    try:
        path = resolve_definition_path(
            Path(args.definition) if args.definition else s.definition
        )
        spec = load_definition(path)
    except DefinitionError as e:
        console.print(Text(f"definition error: {e}", style="red"))
        return EXIT_DEFINITION

    if args.cmd == "validate":
        console.print(_stage_table(spec))
        console.print(Text(f"{path}: ok", style="green"))
        return EXIT_OK

    overrides = _parse_overrides(parser, args.overrides)
    cfg = RunnerConfig.from_settings(s)
    if args.work_root:
        cfg = dataclasses.replace(cfg, work_root=Path(args.work_root))
    if args.run_root:
        cfg = dataclasses.replace(cfg, run_root=Path(args.run_root))

    run_id = args.run_id or new_run_id()
    bind(run_id=run_id, pipeline=spec.name)

    env = initial_env(spec, work_root=cfg.work_root, overrides=overrides)
    stages = build_stages(spec)
    token = CancelToken()
    runner = PipelineRunner(cfg=cfg, logger=log, cancel=token)

    meta: dict[str, object] = {
        "pipeline": spec.name,
        "definition": str(path),
        "overrides": sorted(overrides),
    }

    console.print(
        Panel.fit(
            Text(
                f"kbuild-pipeline - {spec.name}\nrun_id={run_id}\nstages={len(stages)}",
                style="bold",
            ),
            title="Run",
        )
    )

    try:
        with cancel_on_signals(token):
            result = runner.run(stages, env, run_id=run_id, meta=meta)
    except StageFailure as f:
        console.print(_failure_table(f))
        console.print(Text("failed", style="bold red"))
        return EXIT_STAGE_FAILED
    except RunCancelled as c:
        console.print(Text(str(c), style="bold yellow"))
        if c.report_path is not None:
            console.print(Text(f"report: {c.report_path}"))
        return EXIT_CANCELLED

    deliverables = (
        deliverable_paths(spec, result.env, work_root=cfg.work_root) or result.artifacts
    )

    missing = missing_paths(deliverables)

    tbl = Table(title="Result", show_header=True, box=None)
    if missing:
        tbl.add_row("status", Text("missing deliverables", style="red"))
    else:
        tbl.add_row("status", Text("ok", style="green"))
    tbl.add_row("report", Text(str(result.report_path)))
    for p in deliverables:
        if p in missing:
            tbl.add_row("missing", Text(str(p), style="red"))
        else:
            tbl.add_row("artifact", Text(str(p)))

    if missing:
        log.error("Deliverables missing", paths=[str(p) for p in missing])
        console.print(tbl)
        return EXIT_STAGE_FAILED

    if args.collect:
        try:
            collected = collect_artifacts(deliverables, Path(args.collect))
        except (OSError, ValueError) as e:
            console.print(tbl)
            console.print(Text(f"collect failed: {e}", style="bold red"))
            return EXIT_STAGE_FAILED
        tbl.add_row("collected", Text(f"{len(collected)} -> {args.collect}"))

    console.print(tbl)
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
