from __future__ import annotations

import re
from pathlib import Path
from string import Template
from typing import Mapping

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_HEREDOC = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)<<(.+)$")


def is_valid_name(name: str) -> bool:
    return bool(_NAME.match(name))


def expand_vars(text: str, env: Mapping[str, str]) -> str:
    """
    Expand `$VAR` and `${VAR}` against `env`; unknown names are left as-is.
    `$$` yields a literal `$`.
    """
    return Template(text).safe_substitute(env)


def unresolved_vars(text: str, env: Mapping[str, str]) -> list[str]:
    names: list[str] = []
    for m in Template.pattern.finditer(text):
        name = m.group("named") or m.group("braced")
        if name and name not in env and name not in names:
            names.append(name)
    return names


def parse_env_file(path: Path) -> dict[str, str]:
    """
    Parse an environment file written by a process action.

    Accepted lines:
      KEY=VALUE
      KEY<<DELIM
      line 1
      line 2
      DELIM

    Blank lines are ignored. Later assignments override earlier ones.
    """
    path = Path(path)
    if not path.is_file():
        return {}

    out: dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue

        m = _HEREDOC.match(line)
        if m:
            name, delim = m.group(1), m.group(2)
            body: list[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"{path}: unterminated heredoc for {name} (<<{delim})")
            i += 1
            out[name] = "\n".join(body)
            continue

        name, sep, value = line.partition("=")
        if not sep or not is_valid_name(name):
            raise ValueError(f"{path}: invalid environment line: {line!r}")
        out[name] = value

    return out


def parse_path_file(path: Path) -> list[str]:
    path = Path(path)
    if not path.is_file():
        return []
    return [
        ln.strip()
        for ln in path.read_text(encoding="utf-8").splitlines()
        if ln.strip()
    ]
