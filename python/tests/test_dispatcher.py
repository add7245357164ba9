import threading
from pathlib import Path

import pytest

from chunkscribe import openai_engine
from chunkscribe.config import PipelineConfig
from chunkscribe.dispatcher import TranscriptionDispatcher
from chunkscribe.models import JobState, Segment, TimeRange
from chunkscribe.storage import ERROR_MARKER, is_valid_result
from fakes import FakeAPIError, FakeClient


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(openai_engine.time, "sleep", lambda _seconds: None)


def _segments(tmp_path: Path, count: int, size: int = 16) -> list[Segment]:
    chunk_dir = tmp_path / "chunks"
    chunk_dir.mkdir(exist_ok=True)
    segments = []
    for idx in range(1, count + 1):
        path = chunk_dir / f"chunk_{idx:03d}.mp3"
        path.write_bytes(b"x" * size)
        segments.append(Segment(index=idx, range=TimeRange((idx - 1) * 10.0, idx * 10.0), artifact_path=path))
    return segments


def _config(**overrides) -> PipelineConfig:
    base = PipelineConfig(max_concurrency=2, max_retries=3, initial_backoff=0.0)
    return base.with_overrides(overrides)


def test_all_segments_transcribed_and_persisted(tmp_path: Path):
    client = FakeClient(default="words")
    results_dir = tmp_path / "transcriptions"

    report = TranscriptionDispatcher(client, _config(), results_dir).dispatch(_segments(tmp_path, 3))

    assert report.succeeded == 3
    assert report.failed == 0
    assert sorted(report.results) == [1, 2, 3]
    for idx in (1, 2, 3):
        out = results_dir / f"chunk_{idx:03d}.txt"
        assert out.read_text(encoding="utf-8") == "words\n"
        assert (results_dir / f"chunk_{idx:03d}.txt.meta.json").exists()


def test_rerun_with_valid_results_makes_no_calls(tmp_path: Path):
    segments = _segments(tmp_path, 3)
    results_dir = tmp_path / "transcriptions"
    TranscriptionDispatcher(FakeClient(), _config(), results_dir).dispatch(segments)

    client = FakeClient()
    report = TranscriptionDispatcher(client, _config(), results_dir).dispatch(segments)

    assert client.calls == []
    assert report.skipped == 3
    assert all(r.state == JobState.SKIPPED_ALREADY_DONE for r in report.results.values())


def test_error_marked_and_empty_results_are_retried(tmp_path: Path):
    segments = _segments(tmp_path, 3)
    results_dir = tmp_path / "transcriptions"
    results_dir.mkdir()
    (results_dir / "chunk_001.txt").write_text("already done\n", encoding="utf-8")
    (results_dir / "chunk_002.txt").write_text(f"{ERROR_MARKER} HTTP 500 - boom\n", encoding="utf-8")
    (results_dir / "chunk_003.txt").write_text("", encoding="utf-8")

    client = FakeClient(default="fresh")
    report = TranscriptionDispatcher(client, _config(), results_dir).dispatch(segments)

    assert sorted(call["file"] for call in client.calls) == ["chunk_002.mp3", "chunk_003.mp3"]
    assert report.skipped == 1
    assert report.succeeded == 2
    assert (results_dir / "chunk_002.txt").read_text(encoding="utf-8") == "fresh\n"


def test_failure_is_isolated_and_marker_written(tmp_path: Path):
    client = FakeClient(
        {"chunk_002.mp3": [FakeAPIError(500, {"message": "server on fire"})] * 3},
        default="fine",
    )
    results_dir = tmp_path / "transcriptions"

    report = TranscriptionDispatcher(client, _config(), results_dir).dispatch(_segments(tmp_path, 3))

    assert report.succeeded == 2
    assert report.failed == 1
    failure = report.failures()[0]
    assert failure.segment_index == 2
    assert failure.attempts == 3
    assert "server on fire" in failure.error
    assert "HTTP 500" in failure.error

    out = results_dir / "chunk_002.txt"
    assert out.read_text(encoding="utf-8").startswith(ERROR_MARKER)
    assert not is_valid_result(out)
    assert sum(1 for call in client.calls if call["file"] == "chunk_002.mp3") == 3
    assert any("segment 2" in line for line in report.summary_lines())


def test_rate_limited_segment_recovers(tmp_path: Path):
    client = FakeClient({"chunk_001.mp3": [FakeAPIError(429), FakeAPIError(429)]}, default="done")
    events: list[tuple[str, dict]] = []

    report = TranscriptionDispatcher(
        client, _config(), tmp_path / "transcriptions", on_event=lambda e, p: events.append((e, p))
    ).dispatch(_segments(tmp_path, 1))

    assert report.results[1].state == JobState.SUCCEEDED
    assert report.results[1].attempts == 3
    retries = [p for e, p in events if e == "retry"]
    assert [p["status"] for p in retries] == [429, 429]


def test_oversize_artifact_is_rejected_without_network_call(tmp_path: Path):
    segments = _segments(tmp_path, 2)
    segments[0].artifact_path.write_bytes(b"x" * 2048)
    client = FakeClient(default="ok")

    report = TranscriptionDispatcher(
        client, _config(max_upload_bytes=1024), tmp_path / "transcriptions"
    ).dispatch(segments)

    assert [call["file"] for call in client.calls] == ["chunk_002.mp3"]
    assert report.results[1].state == JobState.FAILED
    assert "exceeds" in report.results[1].error
    assert report.results[2].state == JobState.SUCCEEDED


def test_missing_segment_audio_fails_only_that_segment(tmp_path: Path):
    segments = _segments(tmp_path, 2)
    segments[1].artifact_path.unlink()

    report = TranscriptionDispatcher(FakeClient(), _config(), tmp_path / "transcriptions").dispatch(segments)

    assert report.results[1].state == JobState.SUCCEEDED
    assert report.results[2].state == JobState.FAILED


def test_in_flight_jobs_never_exceed_concurrency(tmp_path: Path):
    client = FakeClient(default="ok")
    lock = threading.Lock()
    state = {"current": 0, "peak": 0}

    def on_call(_name):
        with lock:
            state["current"] += 1
            state["peak"] = max(state["peak"], state["current"])
        threading.Event().wait(0.02)
        with lock:
            state["current"] -= 1

    client.audio.transcriptions.on_call = on_call

    report = TranscriptionDispatcher(
        client, _config(max_concurrency=2), tmp_path / "transcriptions"
    ).dispatch(_segments(tmp_path, 8))

    assert report.succeeded == 8
    assert 1 <= state["peak"] <= 2
    assert len(client.calls) == 8


def test_single_worker_submits_in_index_order(tmp_path: Path):
    client = FakeClient(default="ok")
    segments = list(reversed(_segments(tmp_path, 4)))

    TranscriptionDispatcher(client, _config(max_concurrency=1), tmp_path / "transcriptions").dispatch(segments)

    assert [call["file"] for call in client.calls] == [f"chunk_{i:03d}.mp3" for i in range(1, 5)]


def test_json_format_writes_json_artifacts(tmp_path: Path):
    client = FakeClient(default={"text": "structured"})
    results_dir = tmp_path / "transcriptions"

    TranscriptionDispatcher(client, _config(response_format="json"), results_dir).dispatch(_segments(tmp_path, 1))

    content = (results_dir / "chunk_001.json").read_text(encoding="utf-8")
    assert '"text": "structured"' in content


def test_local_write_failure_is_isolated_to_its_segment(tmp_path: Path):
    results_dir = tmp_path / "transcriptions"
    (results_dir / "chunk_002.txt.tmp").mkdir(parents=True)

    report = TranscriptionDispatcher(FakeClient(default="ok"), _config(), results_dir).dispatch(_segments(tmp_path, 3))

    assert report.results[1].state == JobState.SUCCEEDED
    assert report.results[3].state == JobState.SUCCEEDED
    assert report.results[2].state == JobState.FAILED
    assert "IsADirectoryError" in report.results[2].error
    assert not is_valid_result(results_dir / "chunk_002.txt")


def test_event_handler_error_does_not_lose_the_report(tmp_path: Path):
    def on_event(event, payload):
        if event == "segment_done" and payload["segment"] == 1:
            raise RuntimeError("progress sink closed")

    report = TranscriptionDispatcher(
        FakeClient(default="ok"), _config(max_concurrency=1), tmp_path / "transcriptions", on_event=on_event
    ).dispatch(_segments(tmp_path, 2))

    assert report.results[1].state == JobState.FAILED
    assert "progress sink closed" in report.results[1].error
    assert report.results[2].state == JobState.SUCCEEDED
