from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .models import Segment, TimeRange
from .paths import chunk_stem

ERROR_MARKER = "ERROR:"
_CHUNK_INDEX = re.compile(r"^chunk_(\d+)$")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def result_path(results_dir: Path, index: int, total: int, extension: str) -> Path:
    return results_dir / f"{chunk_stem(index, total)}.{extension}"


def meta_path(result: Path) -> Path:
    return result.with_name(result.name + ".meta.json")


def chunk_index(path: Path) -> int | None:
    match = _CHUNK_INDEX.match(path.stem)
    return int(match.group(1)) if match else None


def is_valid_result(path: Path) -> bool:
    """A result counts as done when it exists, is non-empty and is not an error record."""
    try:
        if path.stat().st_size == 0:
            return False
        with path.open("r", encoding="utf-8", errors="replace") as f:
            head = f.read(len(ERROR_MARKER))
    except FileNotFoundError:
        return False
    return not head.startswith(ERROR_MARKER)


def read_error(path: Path) -> str | None:
    try:
        first_line = path.read_text(encoding="utf-8", errors="replace").splitlines()[0]
    except (FileNotFoundError, IndexError):
        return None
    if not first_line.startswith(ERROR_MARKER):
        return None
    return first_line[len(ERROR_MARKER):].strip()


def atomic_write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(content, encoding="utf-8")
    tmp.replace(path)


def atomic_write_json(path: Path, payload: dict[str, Any]) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2))


def write_result(path: Path, content: str) -> None:
    atomic_write_text(path, content)


def write_error(path: Path, detail: str) -> None:
    single_line = " ".join(detail.split())
    atomic_write_text(path, f"{ERROR_MARKER} {single_line}\n")


def write_meta(
    result: Path,
    *,
    segment: Segment,
    status: str,
    attempts: int,
    error: str | None = None,
) -> None:
    atomic_write_json(
        meta_path(result),
        {
            "segmentIndex": segment.index,
            "startSec": round(segment.start_sec, 3),
            "endSec": round(segment.end_sec, 3),
            "status": status,
            "attemptCount": attempts,
            "error": error,
            "updatedAt": now_iso(),
        },
    )


def save_plan(
    path: Path,
    *,
    source: Path,
    audio_path: Path,
    duration_sec: float,
    target_length: float,
    tolerance: float,
    segments: list[Segment],
    silence_threshold_db: float | None = None,
    min_silence_duration: float | None = None,
    trim_silence: bool = False,
) -> None:
    atomic_write_json(
        path,
        {
            "sourcePath": str(source),
            "audioPath": str(audio_path),
            "durationSec": duration_sec,
            "targetLength": target_length,
            "tolerance": tolerance,
            "silenceThresholdDb": silence_threshold_db,
            "minSilenceDuration": min_silence_duration,
            "trimSilence": trim_silence,
            "createdAt": now_iso(),
            "segments": [
                {
                    "index": segment.index,
                    "startSec": segment.start_sec,
                    "endSec": segment.end_sec,
                    "path": str(segment.artifact_path),
                }
                for segment in segments
            ],
        },
    )


def load_plan(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["segments"] = [
        Segment(
            index=int(raw["index"]),
            range=TimeRange(float(raw["startSec"]), float(raw["endSec"])),
            artifact_path=Path(str(raw["path"])),
        )
        for raw in payload.get("segments", [])
    ]
    indices = [segment.index for segment in payload["segments"]]
    if indices != list(range(1, len(indices) + 1)):
        raise ValueError(f"Plan {path} has non-contiguous segment indices")
    return payload


def list_results(results_dir: Path, extensions: tuple[str, ...] = ("txt", "json")) -> list[tuple[int, Path]]:
    found: list[tuple[int, Path]] = []
    if not results_dir.exists():
        return found
    for path in results_dir.iterdir():
        if not path.is_file() or path.name.startswith("."):
            continue
        if path.suffix.lstrip(".") not in extensions:
            continue
        idx = chunk_index(path)
        if idx is None:
            continue
        found.append((idx, path))
    found.sort(key=lambda item: item[0])
    return found
