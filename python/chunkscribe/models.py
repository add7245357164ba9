from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


@dataclass(slots=True, frozen=True)
class TimeRange:
    start: float
    end: float

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError(f"TimeRange end must be after start: [{self.start}, {self.end})")

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass(slots=True, frozen=True)
class Segment:
    index: int
    range: TimeRange
    artifact_path: Path

    @property
    def start_sec(self) -> float:
        return self.range.start

    @property
    def end_sec(self) -> float:
        return self.range.end


class JobState(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_ALREADY_DONE = "skipped_already_done"

    @property
    def terminal(self) -> bool:
        return self not in (JobState.PENDING, JobState.IN_FLIGHT)


@dataclass(slots=True)
class TranscriptionJob:
    segment: Segment
    attempts: int = 0
    state: JobState = JobState.PENDING
    last_error: str | None = None


@dataclass(slots=True)
class TranscriptionResult:
    segment_index: int
    state: JobState
    text: str | None = None
    error: str | None = None
    attempts: int = 0
    result_path: str | None = None

    @property
    def ok(self) -> bool:
        return self.state in (JobState.SUCCEEDED, JobState.SKIPPED_ALREADY_DONE)


@dataclass(slots=True)
class DispatchReport:
    results: dict[int, TranscriptionResult] = field(default_factory=dict)
    interrupted: bool = False

    def _count(self, state: JobState) -> int:
        return sum(1 for result in self.results.values() if result.state == state)

    @property
    def succeeded(self) -> int:
        return self._count(JobState.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self._count(JobState.SKIPPED_ALREADY_DONE)

    @property
    def failed(self) -> int:
        return self._count(JobState.FAILED)

    @property
    def pending(self) -> int:
        return sum(1 for result in self.results.values() if not result.state.terminal)

    def failures(self) -> list[TranscriptionResult]:
        return [
            self.results[idx]
            for idx in sorted(self.results)
            if self.results[idx].state == JobState.FAILED
        ]

    def summary_lines(self) -> list[str]:
        lines = [
            f"Successful: {self.succeeded}",
            f"Skipped: {self.skipped}",
            f"Failed: {self.failed}",
        ]
        if self.pending:
            lines.append(f"Not scheduled: {self.pending}")
        for result in self.failures():
            lines.append(f"  - segment {result.segment_index}: {result.error}")
        return lines

    def to_payload(self) -> dict[str, object]:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "pending": self.pending,
            "interrupted": self.interrupted,
            "failures": [
                {"segment": result.segment_index, "error": result.error, "attempts": result.attempts}
                for result in self.failures()
            ],
        }
