from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from .storage import atomic_write_text, is_valid_result, list_results

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergedSegment:
    index: int
    name: str
    text: str


@dataclass(slots=True)
class MergeResult:
    segments: list[MergedSegment] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    add_markers: bool = False

    @property
    def merged_count(self) -> int:
        return len(self.segments)

    @property
    def word_count(self) -> int:
        return sum(len(segment.text.split()) for segment in self.segments)

    @property
    def text(self) -> str:
        blocks: list[str] = []
        for segment in self.segments:
            if self.add_markers:
                blocks.append(f"--- [{segment.name}] ---\n\n{segment.text}")
            else:
                blocks.append(segment.text)
        return "\n\n".join(blocks) + ("\n" if blocks else "")


def _extract_text(path: Path) -> str:
    raw = path.read_text(encoding="utf-8", errors="replace")
    if path.suffix == ".json":
        try:
            payload = json.loads(raw)
        except ValueError:
            return raw.strip()
        if isinstance(payload, dict):
            return str(payload.get("text") or "").strip()
    return raw.strip()


def merge_transcriptions(
    results_dir: Path,
    *,
    add_markers: bool = False,
    extensions: tuple[str, ...] = ("txt", "json"),
) -> MergeResult:
    found = list_results(results_dir, extensions)
    if not found:
        raise FileNotFoundError(f"No transcription files found in {results_dir}")

    result = MergeResult(add_markers=add_markers)
    for idx, path in found:
        if not is_valid_result(path):
            logger.info("[SKIP] %s", path.name)
            result.skipped.append(path.name)
            continue
        text = _extract_text(path)
        if not text:
            logger.info("[SKIP] %s (no text)", path.name)
            result.skipped.append(path.name)
            continue
        logger.debug("[MERGE] %s", path.name)
        result.segments.append(MergedSegment(index=idx, name=path.name, text=text))

    return result


def write_merged(result: MergeResult, out_path: Path) -> Path:
    atomic_write_text(out_path, result.text)
    return out_path
