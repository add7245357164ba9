import json
from pathlib import Path

import pytest

import worker
from chunkscribe import openai_engine
from chunkscribe.audio import SourceUnreadable
from chunkscribe.config import PipelineConfig
from fakes import FakeAPIError, FakeClient


@pytest.fixture(autouse=True)
def fake_media(monkeypatch):
    monkeypatch.setattr(openai_engine.time, "sleep", lambda _seconds: None)
    monkeypatch.setattr(worker, "probe_duration_seconds", lambda _path: 5390.0)
    monkeypatch.setattr(worker, "scan_silence", lambda _path, **_kwargs: iter([1795.0, 4000.0]))

    def fake_extract(_source, _time_range, out_path, **_kwargs):
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(b"ID3")
        return out_path

    monkeypatch.setattr(worker, "extract_segment", fake_extract)


def _events(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]


def _source(tmp_path: Path) -> Path:
    source = tmp_path / "lecture.mp4"
    source.write_bytes(b"video")
    return source


def test_plan_segments_cuts_at_silence_and_stores_plan(tmp_path: Path):
    config = PipelineConfig(output_dir=tmp_path / "out")

    duration, audio_path, segments = worker.plan_segments(config, _source(tmp_path))

    assert duration == 5390.0
    assert audio_path == tmp_path / "lecture.mp4"
    assert [(s.start_sec, s.end_sec) for s in segments] == [(0.0, 1795.0), (1795.0, 3595.0), (3595.0, 5390.0)]
    assert (tmp_path / "out" / "plan.json").exists()


def test_plan_segments_reuses_stored_plan(monkeypatch, tmp_path: Path):
    config = PipelineConfig(output_dir=tmp_path / "out")
    source = _source(tmp_path)
    _, _, first = worker.plan_segments(config, source)

    def fail(_path):
        raise AssertionError("should not probe again")

    monkeypatch.setattr(worker, "probe_duration_seconds", fail)
    _, _, second = worker.plan_segments(config, source)

    assert second == first


def test_silence_scan_failure_falls_back_to_fixed_intervals(monkeypatch, tmp_path: Path):
    def broken(_path, **_kwargs):
        raise SourceUnreadable("corrupt stream")

    monkeypatch.setattr(worker, "scan_silence", broken)
    config = PipelineConfig(output_dir=tmp_path / "out")

    _, _, segments = worker.plan_segments(config, _source(tmp_path))

    assert [s.end_sec for s in segments] == [1800.0, 3600.0, 5390.0]


def test_run_transcribes_and_merges(monkeypatch, tmp_path: Path, capsys):
    client = FakeClient({"chunk_002.mp3": ["middle"], "chunk_003.mp3": ["end"]}, default="start")
    monkeypatch.setattr(worker, "create_client", lambda **_kwargs: client)
    out_dir = tmp_path / "out"

    code = worker.main(["run", "--source", str(_source(tmp_path)), "--output-dir", str(out_dir), "--retry-delay", "0"])

    assert code == worker.EXIT_OK
    assert (out_dir / "final_transcription.txt").read_text(encoding="utf-8") == "start\n\nmiddle\n\nend\n"
    events = _events(capsys)
    summary = next(e for e in events if e["type"] == "summary")
    assert summary["payload"]["succeeded"] == 3
    assert events[-1]["type"] == "result"

    # second run is a no-op for the API
    code = worker.main(["run", "--source", str(_source(tmp_path)), "--output-dir", str(out_dir)])
    assert code == worker.EXIT_OK
    assert len(client.calls) == 3


def test_run_reports_failures_and_merges_best_effort(monkeypatch, tmp_path: Path, capsys):
    client = FakeClient({"chunk_002.mp3": [FakeAPIError(500, "down")] * 3}, default="ok")
    monkeypatch.setattr(worker, "create_client", lambda **_kwargs: client)
    out_dir = tmp_path / "out"

    code = worker.main(["run", "--source", str(_source(tmp_path)), "--output-dir", str(out_dir), "--retry-delay", "0"])

    assert code == worker.EXIT_FAILED
    assert (out_dir / "final_transcription.txt").read_text(encoding="utf-8") == "ok\n\nok\n"
    summary = next(e for e in _events(capsys) if e["type"] == "summary")
    assert summary["payload"]["failures"][0]["segment"] == 2


def test_strict_run_skips_merge_on_failure(monkeypatch, tmp_path: Path):
    client = FakeClient({"chunk_001.mp3": [FakeAPIError(500, "down")] * 3}, default="ok")
    monkeypatch.setattr(worker, "create_client", lambda **_kwargs: client)
    out_dir = tmp_path / "out"

    code = worker.main(
        ["run", "--source", str(_source(tmp_path)), "--output-dir", str(out_dir), "--retry-delay", "0", "--strict"]
    )

    assert code == worker.EXIT_FAILED
    assert not (out_dir / "final_transcription.txt").exists()


def test_invalid_config_exits_with_config_code(tmp_path: Path, capsys):
    code = worker.main(["run", "--source", str(_source(tmp_path)), "--output-dir", str(tmp_path), "--parallel-jobs", "0"])

    assert code == worker.EXIT_CONFIG
    assert _events(capsys)[-1]["type"] == "error"


def test_cleanup_requires_final_transcript(tmp_path: Path):
    out_dir = tmp_path / "out"
    (out_dir / "chunks").mkdir(parents=True)

    assert worker.main(["cleanup", "--output-dir", str(out_dir)]) == worker.EXIT_FAILED
    assert (out_dir / "chunks").exists()

    (out_dir / "final_transcription.txt").write_text("done\n", encoding="utf-8")
    assert worker.main(["cleanup", "--output-dir", str(out_dir)]) == worker.EXIT_OK
    assert not (out_dir / "chunks").exists()
    assert (out_dir / "final_transcription.txt").exists()


def test_replanning_discards_chunks_and_results_of_previous_plan(monkeypatch, tmp_path: Path):
    client = FakeClient(default="text")
    monkeypatch.setattr(worker, "create_client", lambda **_kwargs: client)
    out_dir = tmp_path / "out"
    source = _source(tmp_path)
    assert worker.main(["run", "--source", str(source), "--output-dir", str(out_dir)]) == worker.EXIT_OK

    extracted: list[tuple[str, float, float]] = []

    def recording_extract(_source, time_range, out_path, **_kwargs):
        extracted.append((out_path.name, time_range.start, time_range.end))
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_bytes(b"ID3")
        return out_path

    monkeypatch.setattr(worker, "extract_segment", recording_extract)
    code = worker.main(
        ["run", "--source", str(source), "--output-dir", str(out_dir), "--chunk-duration", "900", "--tolerance", "0"]
    )

    assert code == worker.EXIT_OK
    assert [start for _, start, _ in extracted] == [0.0, 900.0, 1800.0, 2700.0, 3600.0, 4500.0]
    assert extracted[-1] == ("chunk_006.mp3", 4500.0, 5390.0)
    assert len(client.calls) == 3 + 6
    final = (out_dir / "final_transcription.txt").read_text(encoding="utf-8")
    assert final == "\n\n".join(["text"] * 6) + "\n"


def test_changed_silence_settings_invalidate_stored_plan(monkeypatch, tmp_path: Path):
    config = PipelineConfig(output_dir=tmp_path / "out")
    source = _source(tmp_path)
    worker.plan_segments(config, source)

    probes: list[Path] = []
    monkeypatch.setattr(worker, "probe_duration_seconds", lambda path: probes.append(path) or 5390.0)
    worker.plan_segments(config.with_overrides({"silence_threshold_db": -40.0}), source)
    worker.plan_segments(config.with_overrides({"min_silence_duration": 1.0}), source)

    assert len(probes) == 2
    stored = json.loads((tmp_path / "out" / "plan.json").read_text(encoding="utf-8"))
    assert stored["minSilenceDuration"] == 1.0
    assert stored["trimSilence"] is False


def test_subtitle_format_run_merges_subtitle_artifacts(monkeypatch, tmp_path: Path):
    cue = "1\n00:00:00,000 --> 00:00:02,000\nhello\n"
    client = FakeClient(default=cue)
    monkeypatch.setattr(worker, "create_client", lambda **_kwargs: client)
    out_dir = tmp_path / "out"

    code = worker.main(
        ["run", "--source", str(_source(tmp_path)), "--output-dir", str(out_dir), "--response-format", "srt"]
    )

    assert code == worker.EXIT_OK
    assert (out_dir / "transcriptions" / "chunk_001.srt").exists()
    assert (out_dir / "final_transcription.txt").read_text(encoding="utf-8").count("hello") == 3


def test_run_without_mergeable_results_reports_error(monkeypatch, tmp_path: Path, capsys):
    monkeypatch.setattr(worker, "create_client", lambda **_kwargs: FakeClient())
    monkeypatch.setattr(worker, "merge_transcriptions", _no_results)

    code = worker.main(["run", "--source", str(_source(tmp_path)), "--output-dir", str(tmp_path / "out")])

    assert code == worker.EXIT_FAILED
    assert _events(capsys)[-1]["type"] == "error"


def _no_results(results_dir, **_kwargs):
    raise FileNotFoundError(f"No transcription files found in {results_dir}")
