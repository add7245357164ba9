from __future__ import annotations

from pathlib import Path

FINAL_NAME = "final_transcription"


def output_dir(base: Path) -> Path:
    path = Path(base).expanduser()
    path.mkdir(parents=True, exist_ok=True)
    return path


def chunks_dir(base: Path) -> Path:
    path = output_dir(base) / "chunks"
    path.mkdir(parents=True, exist_ok=True)
    return path


def transcriptions_dir(base: Path) -> Path:
    path = output_dir(base) / "transcriptions"
    path.mkdir(parents=True, exist_ok=True)
    return path


def plan_path(base: Path) -> Path:
    return output_dir(base) / "plan.json"


def trimmed_audio_path(base: Path) -> Path:
    return output_dir(base) / "audio_trimmed.wav"


def final_transcript_path(base: Path, suffix: str = ".txt") -> Path:
    return output_dir(base) / f"{FINAL_NAME}{suffix}"


def index_width(total: int) -> int:
    return max(3, len(str(total)))


def chunk_stem(index: int, total: int) -> str:
    return f"chunk_{index:0{index_width(total)}d}"
