from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from kbuild_pipeline.actions import DownloadAction, EnvAction, ProcessAction
from kbuild_pipeline.core import DefinitionError
from kbuild_pipeline.definition import (
    build_stages,
    deliverable_paths,
    initial_env,
    load_definition,
    parse_definition,
    resolve_definition_path,
    schema_for_pipeline_spec,
)

SHIPPED = Path(__file__).resolve().parents[4] / "pipelines" / "oneplus-mt6983-susfs.json"


def _minimal(**over: Any) -> dict[str, Any]:
    raw: dict[str, Any] = {
        "spec_version": 1,
        "name": "mini",
        "stages": [
            {"name": "hello", "action": {"kind": "process", "argv": ["echo", "hi"]}},
        ],
    }
    raw.update(over)
    return raw


def test_shipped_pipeline_loads() -> None:
    spec = load_definition(SHIPPED)
    assert spec.stage_names() == [
        "ccache-setup",
        "fetch-proton-clang",
        "toolchain-env",
        "check-toolchain",
        "clone-kernel",
        "clone-susfs",
        "patch-kernel",
        "configure-kernel",
        "build-image",
        "build-ksu-susfs-tool",
        "build-ksu-module",
    ]

    stages = build_stages(spec)
    assert isinstance(stages[1].action, DownloadAction)
    assert isinstance(stages[2].action, EnvAction)
    assert isinstance(stages[4].action, ProcessAction)
    assert stages[4].exports["KERNEL_ROOT"] == "${WORKSPACE}/kernel"
    assert stages[8].outputs == ("${KERNEL_IMAGE_PATH}",)


def test_shipped_retried_clones_start_from_a_clean_target() -> None:
    retried = [
        s
        for s in build_stages(load_definition(SHIPPED))
        if isinstance(s.action, ProcessAction) and s.action.attempts > 1
    ]
    assert [s.name for s in retried] == ["clone-kernel", "clone-susfs"]
    for st in retried:
        assert st.action.script is not None
        first, clone = st.action.script.splitlines()[:2]
        target = clone.split()[-1]
        assert first == f"rm -rf {target}"


def test_shipped_pipeline_deliverables(tmp_path: Path) -> None:
    spec = load_definition(SHIPPED)
    env = initial_env(spec, work_root=tmp_path, base_env={})
    env.update(
        KERNEL_IMAGE_PATH=f"{tmp_path}/kernel/out/arch/arm64/boot/Image",
        KSU_SUSFS_TOOL_PATH=f"{tmp_path}/susfs_project/ksu_module_susfs/tools/arm64/ksu_susfs",
        KSU_MODULE_ZIP_PATH=f"{tmp_path}/susfs_project/ksu_module_susfs.zip",
    )
    names = [p.name for p in deliverable_paths(spec, env, work_root=tmp_path)]
    assert names == ["Image", "ksu_susfs", "ksu_module_susfs.zip"]
    assert env["CLANG_DIR"] == f"{tmp_path.resolve()}/proton-clang"


@pytest.mark.parametrize(
    "raw",
    [
        _minimal(spec_version=2),
        _minimal(stages=[]),
        _minimal(stages=[{"name": "x1", "action": {"kind": "docker", "image": "x"}}]),
        _minimal(stages=[{"name": "Bad Name", "action": {"kind": "process", "argv": ["true"]}}]),
        _minimal(stages=[{"name": "x1", "action": {"kind": "process"}}]),
        _minimal(stages=[{"name": "x1", "action": {"kind": "process", "argv": ["a"], "script": "b"}}]),
        _minimal(stages=[{"name": "x1", "action": {"kind": "env"}}]),
        _minimal(env={"not-valid": "x"}),
        _minimal(unknown_field=True),
        _minimal(
            stages=[
                {"name": "dup", "action": {"kind": "process", "argv": ["a"]}},
                {"name": "dup", "action": {"kind": "process", "argv": ["b"]}},
            ]
        ),
    ],
)
def test_invalid_definitions_are_rejected(raw: dict[str, Any]) -> None:
    with pytest.raises(DefinitionError):
        parse_definition(raw)


def test_load_definition_errors(tmp_path: Path) -> None:
    with pytest.raises(DefinitionError):
        load_definition(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(DefinitionError):
        load_definition(broken)


def test_resolve_definition_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("KBUILD_DEFINITION", raising=False)
    with pytest.raises(DefinitionError):
        resolve_definition_path()

    local = tmp_path / "pipeline.json"
    local.write_text(json.dumps(_minimal()))
    assert resolve_definition_path() == local.resolve()

    other = tmp_path / "other.json"
    other.write_text(json.dumps(_minimal()))
    monkeypatch.setenv("KBUILD_DEFINITION", str(other))
    assert resolve_definition_path() == other.resolve()
    assert resolve_definition_path(local) == local.resolve()

    with pytest.raises(DefinitionError):
        resolve_definition_path(tmp_path / "nope.json")


def test_initial_env_precedence(tmp_path: Path) -> None:
    spec = parse_definition(
        _minimal(env={"ARCH": "arm", "TC": "${WORKSPACE}/tc", "OUT": "${ARCH}/out"})
    )
    base = {"PATH": "/usr/bin", "ARCH": "inherited", "WORKSPACE": "/elsewhere"}

    env = initial_env(spec, work_root=tmp_path, overrides={"ARCH": "arm64"}, base_env=base)
    assert env["PATH"] == "/usr/bin"
    assert env["WORKSPACE"] == str(tmp_path.resolve())
    assert env["ARCH"] == "arm64"
    assert env["TC"] == f"{tmp_path.resolve()}/tc"
    assert env["OUT"] == "arm64/out"

    isolated = parse_definition(_minimal(inherit_env=False))
    env = initial_env(isolated, work_root=tmp_path, base_env=base)
    assert env == {"WORKSPACE": str(tmp_path.resolve())}


def test_schema_describes_stages() -> None:
    schema = schema_for_pipeline_spec()
    assert "stages" in schema["properties"]
    assert set(schema["required"]) >= {"spec_version", "name", "stages"}
