from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger(__name__)

JSON_FORMATS = ("json", "verbose_json")


class TransientNetworkOrServerError(RuntimeError):
    def __init__(self, detail: str, status_code: int | None = None):
        self.detail = detail
        self.status_code = status_code
        prefix = f"HTTP {status_code}" if status_code is not None else "Request failed"
        super().__init__(f"{prefix} - {detail}")


class RateLimited(TransientNetworkOrServerError):
    def __init__(self, detail: str):
        super().__init__(detail, status_code=429)


class RetryBudgetExhausted(RuntimeError):
    def __init__(self, attempts: int, last_error: Exception | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts: {last_error}")


def _to_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()  # pydantic style
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


def _error_detail(exc: Exception) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, (dict, list)):
        return json.dumps(body, ensure_ascii=False)
    if body:
        return str(body)
    response = getattr(exc, "response", None)
    text = getattr(response, "text", None)
    if isinstance(text, str) and text.strip():
        return text.strip()
    return str(exc) or type(exc).__name__


def classify_error(exc: Exception) -> TransientNetworkOrServerError:
    """Map a provider exception to RateLimited (429) or a generic transient error."""
    if isinstance(exc, TransientNetworkOrServerError):
        return exc
    status = getattr(exc, "status_code", None)
    detail = _error_detail(exc)
    if status == 429:
        return RateLimited(detail)
    if isinstance(status, int):
        return TransientNetworkOrServerError(detail, status_code=status)
    return TransientNetworkOrServerError(f"{type(exc).__name__}: {detail}")


def create_client(*, base_url: str | None = None) -> Any:
    try:
        from openai import OpenAI
    except ImportError as exc:  # pragma: no cover - env dependent
        raise RuntimeError("The openai package is missing. Install the project dependencies.") from exc

    api_key = os.environ.get("OPENAI_API_KEY", "").strip()
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is not set")

    # Retries are handled per segment by transcribe_segment_openai.
    return OpenAI(api_key=api_key, base_url=base_url, max_retries=0)


def render_payload(response: Any, response_format: str) -> str:
    if response_format in JSON_FORMATS:
        if isinstance(response, str):
            return response if response.endswith("\n") else response + "\n"
        return json.dumps(_to_dict(response), ensure_ascii=False, indent=2) + "\n"

    if isinstance(response, str):
        text = response
    elif isinstance(response, bytes):
        text = response.decode("utf-8", errors="replace")
    else:
        text = str(_to_dict(response).get("text", ""))
    return text.rstrip("\n") + "\n"


def request_transcription(
    client: Any,
    audio_path: Path,
    *,
    model: str,
    response_format: str,
    language: str | None,
    timeout: float,
) -> str:
    kwargs: dict[str, Any] = {
        "model": model,
        "response_format": response_format,
        "timeout": timeout,
    }
    if language:
        kwargs["language"] = language

    try:
        with audio_path.open("rb") as audio_file:
            response = client.audio.transcriptions.create(file=audio_file, **kwargs)
    except Exception as exc:  # noqa: BLE001 - provider error typing is broad
        raise classify_error(exc) from exc
    return render_payload(response, response_format)


def transcribe_segment_openai(
    client: Any,
    audio_path: Path,
    *,
    model: str = "whisper-1",
    response_format: str = "text",
    language: str | None = None,
    timeout: float = 120.0,
    max_retries: int = 3,
    initial_backoff: float = 5.0,
    on_retry: Callable[[int, TransientNetworkOrServerError, float], None] | None = None,
) -> tuple[str, int]:
    """Transcribe one audio file, retrying up to ``max_retries`` attempts in total.

    Rate limits and other failures share one attempt budget. After a 429 the
    backoff doubles for the rest of this file's attempts; other failures wait
    the current backoff unchanged. Returns the payload and the attempt count.
    """
    backoff = initial_backoff
    last_error: TransientNetworkOrServerError | None = None

    for attempt in range(1, max_retries + 1):
        try:
            payload = request_transcription(
                client,
                audio_path,
                model=model,
                response_format=response_format,
                language=language,
                timeout=timeout,
            )
            return payload, attempt
        except TransientNetworkOrServerError as exc:
            last_error = exc
            if attempt >= max_retries:
                break

            if isinstance(exc, RateLimited):
                logger.warning(
                    "Rate limited on %s, waiting %.1fs (attempt %d/%d)",
                    audio_path.name, backoff, attempt, max_retries,
                )
            else:
                logger.warning(
                    "Error for %s: %s (attempt %d/%d), retrying in %.1fs",
                    audio_path.name, exc, attempt, max_retries, backoff,
                )
            if on_retry is not None:
                on_retry(attempt, exc, backoff)
            time.sleep(backoff)
            if isinstance(exc, RateLimited):
                backoff *= 2

    logger.error("Failed after %d attempts: %s (%s)", max_retries, audio_path.name, last_error)
    raise RetryBudgetExhausted(max_retries, last_error)
