from __future__ import annotations

import gzip
import json
import logging
import math
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, TextIO, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def ensure_outdir(path: str | Path) -> Path:
    p = Path(path)
    p.mkdir(parents=True, exist_ok=True)
    return p


def open_textmaybe_gzip(path: str | Path, mode: str = "rt") -> TextIO:
    p = str(path)
    if p.endswith(".gz"):
        return gzip.open(p, mode)  # type: ignore[return-value]
    return open(p, mode)


def _json_default(obj: Any) -> Any:
    # numpy scalars / arrays and enums end up in summaries
    if hasattr(obj, "tolist"):
        return obj.tolist()
    if hasattr(obj, "value"):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def write_json(path: str | Path, obj: Any) -> None:
    with open(path, "wt", encoding="utf-8") as f:
        json.dump(obj, f, indent=2, sort_keys=True, default=_json_default)


def dataclass_to_jsonable(dc: Any) -> Mapping[str, Any]:
    return asdict(dc)


def chunked(iterable: Iterable[T], n: int) -> Iterable[list[T]]:
    chunk: list[T] = []
    for item in iterable:
        chunk.append(item)
        if len(chunk) >= n:
            yield chunk
            chunk = []
    if chunk:
        yield chunk


def format_lod(lod: Optional[float]) -> str:
    """Fixed four-decimal rendering used for every persisted VQSLOD string."""
    if lod is None or math.isnan(lod):
        return "NaN"
    return f"{lod:.4f}"
