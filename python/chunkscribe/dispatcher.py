from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Iterable

from .config import PipelineConfig
from .models import DispatchReport, JobState, Segment, TranscriptionJob, TranscriptionResult
from .openai_engine import RetryBudgetExhausted, TransientNetworkOrServerError, transcribe_segment_openai
from .storage import is_valid_result, read_error, result_path, write_error, write_meta, write_result

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, dict[str, Any]], None]


class OversizeArtifact(RuntimeError):
    def __init__(self, path: Path, size_bytes: int, limit_bytes: int):
        self.path = path
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(
            f"File exceeds {limit_bytes / (1024 * 1024):.0f}MB API limit "
            f"({size_bytes} bytes): {path.name}"
        )


class TranscriptionDispatcher:
    """Runs segment transcriptions on a bounded thread pool.

    Segments with a valid result on disk are skipped before scheduling. Each
    worker owns its job until it reaches a terminal state; results are
    collected from futures by the calling thread.
    """

    def __init__(
        self,
        client: Any,
        config: PipelineConfig,
        results_dir: Path,
        *,
        on_event: EventHandler | None = None,
    ):
        self.client = client
        self.config = config
        self.results_dir = results_dir
        self._on_event = on_event
        self._event_lock = threading.Lock()

    def _emit(self, event: str, **payload: Any) -> None:
        if self._on_event is None:
            return
        with self._event_lock:
            self._on_event(event, payload)

    def result_path_for(self, segment: Segment, total: int) -> Path:
        return result_path(self.results_dir, segment.index, total, self.config.result_extension)

    def dispatch(self, segments: Iterable[Segment]) -> DispatchReport:
        ordered = sorted(segments, key=lambda s: s.index)
        total = len(ordered)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        report = DispatchReport()

        to_run: list[TranscriptionJob] = []
        for segment in ordered:
            out_path = self.result_path_for(segment, total)
            if is_valid_result(out_path):
                logger.info("[SKIP] Already transcribed: %s", segment.artifact_path.name)
                report.results[segment.index] = TranscriptionResult(
                    segment_index=segment.index,
                    state=JobState.SKIPPED_ALREADY_DONE,
                    result_path=str(out_path),
                )
                self._emit("segment_skipped", segment=segment.index, total=total)
                continue
            to_run.append(TranscriptionJob(segment=segment))
            report.results[segment.index] = TranscriptionResult(
                segment_index=segment.index,
                state=JobState.PENDING,
                result_path=str(out_path),
            )

        if not to_run:
            return report

        logger.info(
            "Transcribing %d of %d segments with %d parallel jobs",
            len(to_run), total, self.config.max_concurrency,
        )

        executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrency,
            thread_name_prefix="transcribe",
        )
        futures: dict[Future[TranscriptionResult], TranscriptionJob] = {}
        try:
            for job in to_run:
                futures[executor.submit(self._run_job, job, total)] = job
            done, _ = wait(futures)
        except KeyboardInterrupt:
            report.interrupted = True
            cancelled = sum(1 for future in futures if future.cancel())
            logger.warning(
                "Interrupted: %d queued segments will not be scheduled; waiting for in-flight jobs",
                cancelled,
            )
            done, _ = wait(futures)
        finally:
            executor.shutdown(wait=True)

        for future in done:
            if future.cancelled():
                continue
            job = futures[future]
            try:
                result = future.result()
            except Exception as exc:
                # Local failures (disk, event handler) stay confined to their segment.
                logger.exception("Segment %d failed outside the transcription call", job.segment.index)
                job.state = JobState.FAILED
                job.last_error = f"{type(exc).__name__}: {exc}"
                result = TranscriptionResult(
                    segment_index=job.segment.index,
                    state=job.state,
                    error=job.last_error,
                    attempts=job.attempts,
                    result_path=str(self.result_path_for(job.segment, total)),
                )
            report.results[result.segment_index] = result

        return report

    def _run_job(self, job: TranscriptionJob, total: int) -> TranscriptionResult:
        segment = job.segment
        out_path = self.result_path_for(segment, total)

        try:
            size_bytes = segment.artifact_path.stat().st_size
        except FileNotFoundError:
            return self._fail(job, out_path, f"Segment audio missing: {segment.artifact_path}")

        if size_bytes > self.config.max_upload_bytes:
            exc = OversizeArtifact(segment.artifact_path, size_bytes, self.config.max_upload_bytes)
            logger.error("%s", exc)
            return self._fail(job, out_path, str(exc))

        job.state = JobState.IN_FLIGHT
        logger.info("Transcribing: %s", segment.artifact_path.name)
        self._emit("segment_started", segment=segment.index, total=total)

        def _on_retry(attempt: int, exc: TransientNetworkOrServerError, delay: float) -> None:
            job.attempts = attempt
            job.last_error = str(exc)
            self._emit(
                "retry",
                segment=segment.index,
                attempt=attempt,
                status=exc.status_code,
                delaySec=delay,
                error=str(exc),
            )

        try:
            payload, attempts = transcribe_segment_openai(
                self.client,
                segment.artifact_path,
                model=self.config.model,
                response_format=self.config.response_format,
                language=self.config.language,
                timeout=self.config.request_timeout,
                max_retries=self.config.max_retries,
                initial_backoff=self.config.initial_backoff,
                on_retry=_on_retry,
            )
        except RetryBudgetExhausted as exc:
            job.attempts = exc.attempts
            detail = str(exc.last_error) if exc.last_error is not None else str(exc)
            return self._fail(job, out_path, detail)

        job.attempts = attempts
        job.state = JobState.SUCCEEDED
        write_result(out_path, payload)
        write_meta(out_path, segment=segment, status=job.state.value, attempts=attempts)
        logger.info("Completed: %s", segment.artifact_path.name)
        self._emit("segment_done", segment=segment.index, total=total, attempts=attempts)
        return TranscriptionResult(
            segment_index=segment.index,
            state=job.state,
            text=payload,
            attempts=attempts,
            result_path=str(out_path),
        )

    def _fail(self, job: TranscriptionJob, out_path: Path, detail: str) -> TranscriptionResult:
        job.state = JobState.FAILED
        job.last_error = detail
        write_error(out_path, detail)
        write_meta(out_path, segment=job.segment, status=job.state.value, attempts=job.attempts, error=detail)
        self._emit("segment_failed", segment=job.segment.index, attempts=job.attempts, error=detail)
        return TranscriptionResult(
            segment_index=job.segment.index,
            state=job.state,
            error=read_error(out_path) or detail,
            attempts=job.attempts,
            result_path=str(out_path),
        )
