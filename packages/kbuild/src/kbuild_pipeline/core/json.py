import json
from pathlib import Path
from typing import Any, Iterator

from .fs import atomic_write_text, ensure_parent


def atomic_write_json(path: Path, obj: Any, *, indent: int = 2) -> None:
    """Paths, enums and other leftovers are written with str()."""
    text = json.dumps(obj, ensure_ascii=False, indent=indent, default=str)
    atomic_write_text(path, text + "\n")


def read_json(path: Path) -> Any:
    with Path(path).open("r", encoding="utf-8") as f:
        return json.load(f)


def append_jsonl(path: Path, obj: Any) -> None:
    """
    Append one compact JSON record. Each call opens, writes a full line and
    closes, so a crash leaves at most a truncated last line.
    """
    line = json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)
    ensure_parent(path)
    with Path(path).open("a", encoding="utf-8") as f:
        f.write(line + "\n")


def iter_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    with Path(path).open("r", encoding="utf-8") as f:
        for ln in f:
            if ln.strip():
                yield json.loads(ln)
