from __future__ import annotations

import threading
import types
from pathlib import Path


class FakeAPIError(Exception):
    """Shaped like openai.APIStatusError: carries status_code and a parsed body."""

    def __init__(self, status_code: int, body: object = None, message: str = "error"):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class FakeTranscriptions:
    def __init__(self, actions: dict[str, list[object]] | list[object], default: object = "transcript"):
        self.actions = actions
        self.default = default
        self.calls: list[dict[str, object]] = []
        self.lock = threading.Lock()
        self.on_call = None

    def create(self, **kwargs):
        audio_file = kwargs["file"]
        name = Path(audio_file.name).name
        with self.lock:
            self.calls.append({**kwargs, "file": name})
            if isinstance(self.actions, dict):
                queue = self.actions.get(name, [])
            else:
                queue = self.actions
            action = queue.pop(0) if queue else self.default
        if self.on_call is not None:
            self.on_call(name)
        if isinstance(action, Exception):
            raise action
        return action


class FakeClient:
    def __init__(self, actions: dict[str, list[object]] | list[object] | None = None, default: object = "transcript"):
        self.audio = types.SimpleNamespace(transcriptions=FakeTranscriptions(actions or [], default))

    @property
    def calls(self) -> list[dict[str, object]]:
        return self.audio.transcriptions.calls
