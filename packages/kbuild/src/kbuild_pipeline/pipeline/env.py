from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterator, Mapping, Sequence

from kbuild_pipeline.core import expand_vars, is_valid_name


@dataclass(frozen=True, slots=True)
class EnvChange:
    stage: str
    set_keys: tuple[str, ...]
    path_prepend: tuple[str, ...] = field(default_factory=tuple)


class RunEnv:
    """
    The environment shared by all stages of one run.

    Stages never get a live view: each reads an immutable snapshot taken when
    it starts. Changes are applied between stages, are never rolled back, and
    keys are never removed.
    """

    def __init__(self, initial: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = {}
        self._history: list[EnvChange] = []
        if initial:
            self.apply(stage="<initial>", updates=initial)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._values.get(key, default)

    def snapshot(self) -> Mapping[str, str]:
        return MappingProxyType(dict(self._values))

    def as_dict(self) -> dict[str, str]:
        return dict(self._values)

    def history(self) -> list[EnvChange]:
        return list(self._history)

    def expand(self, text: str) -> str:
        return expand_vars(text, self._values)

    def apply(
        self,
        *,
        stage: str,
        updates: Mapping[str, str] | None = None,
        path_prepend: Sequence[str] = (),
    ) -> list[str]:
        """
        Merge `updates` and put `path_prepend` entries (in order) at the
        front of PATH. Returns the keys that were set.
        """
        updates = dict(updates or {})
        bad = sorted(k for k in updates if not is_valid_name(k))
        if bad:
            raise ValueError(f"Invalid environment variable name(s) from {stage}: {bad}")

        for k, v in updates.items():
            self._values[k] = str(v)

        keys = list(updates)
        prepend = [p for p in path_prepend if p]
        if prepend:
            current = self._values.get("PATH", "")
            parts = prepend + ([current] if current else [])
            self._values["PATH"] = os.pathsep.join(parts)
            if "PATH" not in keys:
                keys.append("PATH")

        if keys:
            self._history.append(
                EnvChange(stage=stage, set_keys=tuple(keys), path_prepend=tuple(prepend))
            )
        return keys
