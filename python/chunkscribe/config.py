from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

# OpenAI audio endpoint rejects uploads above 25 MiB.
MAX_UPLOAD_BYTES = 25 * 1024 * 1024

RESPONSE_FORMAT_EXTENSIONS = {
    "text": "txt",
    "json": "json",
    "verbose_json": "json",
    "srt": "srt",
    "vtt": "vtt",
}


class ConfigError(ValueError):
    pass


def _env_str(env: Mapping[str, str], key: str, default: str | None) -> str | None:
    value = env.get(key, "").strip()
    return value if value else default


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def parse_bitrate(value: str) -> int:
    """Return bits per second for ffmpeg-style bitrates such as ``64k``."""
    raw = value.strip().lower()
    multiplier = 1
    if raw.endswith("k"):
        multiplier, raw = 1000, raw[:-1]
    elif raw.endswith("m"):
        multiplier, raw = 1_000_000, raw[:-1]
    try:
        bits = int(float(raw) * multiplier)
    except ValueError as exc:
        raise ConfigError(f"Invalid audio bitrate: {value!r}") from exc
    if bits <= 0:
        raise ConfigError(f"Invalid audio bitrate: {value!r}")
    return bits


def estimated_size_bytes(duration_sec: float, bitrate: str) -> int:
    return int(duration_sec * parse_bitrate(bitrate) / 8)


@dataclass(slots=True)
class PipelineConfig:
    target_length: float = 1800.0
    tolerance: float = 120.0
    silence_threshold_db: float = -30.0
    min_silence_duration: float = 2.0
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    max_concurrency: int = 2
    max_retries: int = 3
    initial_backoff: float = 5.0
    request_timeout: float = 120.0
    model: str = "whisper-1"
    response_format: str = "text"
    language: str | None = None
    base_url: str | None = None
    audio_bitrate: str = "64k"
    sample_rate: int = 16000
    channels: int = 1
    normalize: bool = True
    trim_silence: bool = False
    silence_keep: float = 0.8
    output_dir: Path = Path("output")

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "PipelineConfig":
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            target_length=_env_float(env, "CHUNK_DURATION", defaults.target_length),
            tolerance=_env_float(env, "CUT_TOLERANCE", defaults.tolerance),
            silence_threshold_db=_env_float(env, "SILENCE_THRESHOLD_DB", defaults.silence_threshold_db),
            min_silence_duration=_env_float(env, "SILENCE_DURATION", defaults.min_silence_duration),
            max_upload_bytes=_env_int(env, "MAX_UPLOAD_BYTES", defaults.max_upload_bytes),
            max_concurrency=_env_int(env, "PARALLEL_JOBS", defaults.max_concurrency),
            max_retries=_env_int(env, "MAX_RETRIES", defaults.max_retries),
            initial_backoff=_env_float(env, "RETRY_DELAY", defaults.initial_backoff),
            request_timeout=_env_float(env, "OPENAI_REQUEST_TIMEOUT_SEC", defaults.request_timeout),
            model=_env_str(env, "WHISPER_MODEL", defaults.model) or defaults.model,
            response_format=_env_str(env, "RESPONSE_FORMAT", defaults.response_format) or defaults.response_format,
            language=_env_str(env, "LANGUAGE", None),
            base_url=_env_str(env, "OPENAI_BASE_URL", None),
            audio_bitrate=_env_str(env, "AUDIO_BITRATE", defaults.audio_bitrate) or defaults.audio_bitrate,
            sample_rate=_env_int(env, "SAMPLE_RATE", defaults.sample_rate),
            channels=_env_int(env, "CHANNELS", defaults.channels),
            normalize=_env_bool(env, "AUDIO_NORMALIZE", defaults.normalize),
            trim_silence=_env_bool(env, "TRIM_SILENCE", defaults.trim_silence),
            silence_keep=_env_float(env, "SILENCE_KEEP", defaults.silence_keep),
            output_dir=Path(_env_str(env, "OUTPUT_DIR", str(defaults.output_dir)) or defaults.output_dir).expanduser(),
        )

    def with_overrides(self, overrides: Mapping[str, Any]) -> "PipelineConfig":
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        cleaned = {key: value for key, value in overrides.items() if value is not None}
        if "output_dir" in cleaned:
            cleaned["output_dir"] = Path(cleaned["output_dir"]).expanduser()
        return replace(self, **cleaned)

    @property
    def result_extension(self) -> str:
        return RESPONSE_FORMAT_EXTENSIONS[self.response_format]

    def validate(self) -> "PipelineConfig":
        if self.target_length <= 0:
            raise ConfigError("target_length must be > 0")
        if self.tolerance < 0:
            raise ConfigError("tolerance must be >= 0")
        if self.min_silence_duration <= 0:
            raise ConfigError("min_silence_duration must be > 0")
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be >= 1")
        if self.max_retries < 1:
            raise ConfigError("max_retries must be >= 1")
        if self.initial_backoff < 0:
            raise ConfigError("initial_backoff must be >= 0")
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be > 0")
        if self.max_upload_bytes <= 0:
            raise ConfigError("max_upload_bytes must be > 0")
        if self.response_format not in RESPONSE_FORMAT_EXTENSIONS:
            raise ConfigError(
                f"Unsupported response_format {self.response_format!r}; "
                f"expected one of {', '.join(RESPONSE_FORMAT_EXTENSIONS)}"
            )

        # A cut can land up to `tolerance` past the target boundary.
        longest = self.target_length + self.tolerance
        expected = estimated_size_bytes(longest, self.audio_bitrate)
        if expected > self.max_upload_bytes:
            raise ConfigError(
                f"Segments of up to {longest:.0f}s at {self.audio_bitrate} are ~{expected} bytes, "
                f"above the {self.max_upload_bytes} byte upload limit. "
                "Lower CHUNK_DURATION or AUDIO_BITRATE."
            )
        return self
