from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from collections import deque
from pathlib import Path
from typing import Iterable, Iterator

from .models import TimeRange

logger = logging.getLogger(__name__)

_SILENCE_START = re.compile(r"silence_start:\s*(-?\d+(?:\.\d+)?)")
_SILENCE_END = re.compile(r"silence_end:\s*(-?\d+(?:\.\d+)?)(?:\s*\|\s*silence_duration:\s*(\d+(?:\.\d+)?))?")


class SourceUnreadable(RuntimeError):
    pass


def ffmpeg_bin() -> str:
    return os.environ.get("FFMPEG_BIN", "ffmpeg")


def ffprobe_bin() -> str:
    return os.environ.get("FFPROBE_BIN", "ffprobe")


def _stderr_tail(stderr: bytes | str | None, lines: int = 5) -> str:
    if not stderr:
        return ""
    if isinstance(stderr, bytes):
        stderr = stderr.decode("utf-8", errors="replace")
    return "\n".join(stderr.strip().splitlines()[-lines:])


def run(cmd: list[str]) -> None:
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except FileNotFoundError as exc:
        raise SourceUnreadable(f"{cmd[0]} is not installed or not on PATH") from exc
    except subprocess.CalledProcessError as exc:
        raise SourceUnreadable(f"{cmd[0]} failed: {_stderr_tail(exc.stderr)}") from exc


def probe_duration_seconds(source: Path) -> float:
    if not source.exists():
        raise SourceUnreadable(f"Source not found: {source}")
    cmd = [
        ffprobe_bin(),
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(source),
    ]
    try:
        completed = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        payload = json.loads(completed.stdout.decode("utf-8"))
    except FileNotFoundError as exc:
        raise SourceUnreadable(f"{cmd[0]} is not installed or not on PATH") from exc
    except subprocess.CalledProcessError as exc:
        raise SourceUnreadable(f"ffprobe could not read {source}: {_stderr_tail(exc.stderr)}") from exc
    except ValueError as exc:
        raise SourceUnreadable(f"ffprobe returned unparseable output for {source}") from exc

    duration = float(payload.get("format", {}).get("duration", 0) or 0)
    if duration <= 0:
        raise SourceUnreadable(f"Could not read duration of {source} via ffprobe")
    return duration


def parse_silencedetect(lines: Iterable[str]) -> Iterator[float]:
    """Yield one cut point per silent interval reported by ffmpeg's silencedetect.

    The point is the middle of the interval. A silence still open when the
    stream ends yields its start.
    """
    pending_start: float | None = None
    for line in lines:
        start_match = _SILENCE_START.search(line)
        if start_match:
            pending_start = max(0.0, float(start_match.group(1)))
            continue

        end_match = _SILENCE_END.search(line)
        if not end_match:
            continue
        end = float(end_match.group(1))
        if pending_start is None:
            duration = float(end_match.group(2)) if end_match.group(2) else 0.0
            pending_start = max(0.0, end - duration)
        yield round((pending_start + end) / 2, 3)
        pending_start = None

    if pending_start is not None:
        yield round(pending_start, 3)


def scan_silence(
    source: Path,
    *,
    threshold_db: float,
    min_silence_duration: float,
) -> Iterator[float]:
    if min_silence_duration <= 0:
        raise ValueError("min_silence_duration must be > 0")
    if not source.exists():
        raise SourceUnreadable(f"Source not found: {source}")

    cmd = [
        ffmpeg_bin(),
        "-hide_banner",
        "-nostats",
        "-i",
        str(source),
        "-vn",
        "-af",
        f"silencedetect=noise={threshold_db}dB:d={min_silence_duration}",
        "-f",
        "null",
        "-",
    ]
    return _iter_silence(cmd, source)


def _iter_silence(cmd: list[str], source: Path) -> Iterator[float]:
    try:
        proc = subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
    except OSError as exc:
        raise SourceUnreadable(f"Could not start {cmd[0]}: {exc}") from exc

    tail: deque[str] = deque(maxlen=5)

    def _lines() -> Iterator[str]:
        assert proc.stderr is not None
        for line in proc.stderr:
            tail.append(line.rstrip())
            yield line

    try:
        yield from parse_silencedetect(_lines())
        returncode = proc.wait()
        if returncode != 0:
            raise SourceUnreadable(f"Silence scan of {source} failed: " + "\n".join(tail))
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()
        if proc.stderr is not None:
            proc.stderr.close()


def extract_segment(
    source: Path,
    time_range: TimeRange,
    out_path: Path,
    *,
    bitrate: str = "64k",
    sample_rate: int = 16000,
    channels: int = 1,
    normalize: bool = True,
) -> Path:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = out_path.with_name(f".{out_path.stem}.partial{out_path.suffix}")
    cmd = [
        ffmpeg_bin(),
        "-y",
        "-ss",
        f"{time_range.start:.3f}",
        "-t",
        f"{time_range.duration:.3f}",
        "-i",
        str(source),
        "-vn",
    ]
    if normalize:
        cmd += ["-af", "loudnorm=I=-16:TP=-1.5:LRA=11"]
    cmd += [
        "-ac",
        str(channels),
        "-ar",
        str(sample_rate),
        "-c:a",
        "libmp3lame",
        "-b:a",
        bitrate,
        str(tmp_path),
    ]
    run(cmd)
    tmp_path.replace(out_path)
    logger.debug("Extracted %s [%.3f, %.3f)", out_path.name, time_range.start, time_range.end)
    return out_path


def remove_silence(
    source: Path,
    out_path: Path,
    *,
    threshold_db: float = -34.0,
    min_silence_duration: float = 2.0,
    keep: float = 0.8,
) -> Path:
    """Shorten silences longer than ``min_silence_duration`` down to ``keep`` seconds."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    audio_filter = ",".join(
        [
            (
                "silenceremove=stop_periods=-1"
                f":stop_duration={min_silence_duration}"
                f":stop_threshold={threshold_db}dB"
                f":stop_silence={keep}"
                ":detection=rms:window=0.1"
            ),
            "aresample=async=1:first_pts=0",
            "highpass=f=20",
        ]
    )
    cmd = [
        ffmpeg_bin(),
        "-y",
        "-i",
        str(source),
        "-vn",
        "-af",
        audio_filter,
        "-c:a",
        "pcm_s16le",
        str(out_path),
    ]
    run(cmd)
    if not out_path.exists() or out_path.stat().st_size <= 1000:
        raise SourceUnreadable(f"Silence removal produced no usable audio for {source}")
    return out_path
