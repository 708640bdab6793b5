"""Audio transcription via the OpenAI Whisper HTTP API."""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor

import httpx

from conversation_scribe._types import EngineResult, EngineSegment
from conversation_scribe.transcriber import (
    FatalError,
    Transcriber,
    TransientError,
    classify_status,
)

logger = logging.getLogger(__name__)


class OpenAITranscriber(Transcriber):
    """Posts WAV chunks to ``/audio/transcriptions`` with verbose_json output."""

    name = "OpenAI"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "whisper-1",
        base_url: str = "https://api.openai.com/v1",
        executor: ThreadPoolExecutor | None = None,
        max_workers: int = 3,
        http_timeout: float = 60.0,
    ):
        super().__init__(api_key=api_key, executor=executor, max_workers=max_workers)
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.http_timeout = http_timeout
        logger.info("OpenAITranscriber initialized: model=%s, base_url=%s", model, self.base_url)

    @property
    def url(self) -> str:
        return f"{self.base_url}/audio/transcriptions"

    def _transcribe_sync(self, audio_bytes: bytes, language: str) -> EngineResult:
        data = {"model": self.model, "response_format": "verbose_json"}
        if language != "auto":
            data["language"] = language

        files = {"file": (f"chunk-{int(time.time() * 1000)}.wav", audio_bytes, "audio/wav")}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            with httpx.Client(timeout=self.http_timeout) as client:
                resp = client.post(self.url, headers=headers, data=data, files=files)
        except httpx.TransportError as e:
            raise TransientError(f"OpenAI request failed: {e}") from e

        if resp.status_code != 200:
            raise classify_status(resp.status_code, _error_detail(resp), self.name)

        try:
            payload = resp.json()
        except ValueError as e:
            raise FatalError(f"OpenAI returned invalid JSON: {e}") from e

        segments = [
            EngineSegment(
                text=seg.get("text", ""),
                start=float(seg.get("start", 0.0)),
                end=float(seg.get("end", 0.0)),
                confidence=_logprob_confidence(seg.get("avg_logprob")),
            )
            for seg in payload.get("segments") or []
        ]
        confidence = sum(s.confidence for s in segments) / len(segments) if segments else 0.0

        return EngineResult(
            text=(payload.get("text") or "").strip(),
            language=payload.get("language") or language,
            confidence=confidence,
            segments=segments,
        )


def _logprob_confidence(avg_logprob) -> float:
    if avg_logprob is None:
        return 0.0
    return min(1.0, math.exp(float(avg_logprob)))


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"].get("message", "Unknown API error")
    return str(body)[:200]
