"""Transcription engine contract, error taxonomy and WAV encoding."""

import asyncio
import io
import logging
import wave
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from conversation_scribe._types import EngineResult

logger = logging.getLogger(__name__)


class TranscriptionError(Exception):
    """Base class for engine failures."""

    retryable = False


class RateLimitedError(TranscriptionError):
    """Engine answered 429."""

    retryable = True


class TransientError(TranscriptionError):
    """Network error, timeout or server-side failure."""

    retryable = True


class AuthError(TranscriptionError):
    """Credential missing, invalid or revoked."""


class FatalError(TranscriptionError):
    """Request rejected for a reason retrying cannot fix."""


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float32 samples in [-1, 1] as 16-bit PCM mono WAV bytes."""
    audio_int16 = np.clip(samples * 32767, -32768, 32767).astype(np.int16)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(audio_int16.tobytes())
    return buffer.getvalue()


def wav_size_bytes(sample_count: int) -> int:
    """Size of the WAV produced by encode_wav for ``sample_count`` samples."""
    return 44 + sample_count * 2


class Transcriber(ABC):
    """Remote speech-to-text engine.

    Runs the blocking client call inside a thread pool executor so the event
    loop never waits on the network.
    """

    name = "engine"

    def __init__(
        self,
        api_key: str | None = None,
        executor: ThreadPoolExecutor | None = None,
        max_workers: int = 3,
    ):
        self.api_key = api_key
        self.executor = executor or ThreadPoolExecutor(max_workers=max_workers)
        self._executor_owned = executor is None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def update_credentials(self, api_key: str) -> None:
        self.api_key = api_key
        logger.info("%s credentials updated", self.name)

    async def transcribe(
        self,
        audio_bytes: bytes,
        language: str = "en",
        timeout: float = 30.0,
    ) -> EngineResult:
        """Transcribe WAV bytes.

        Args:
            audio_bytes: Encoded WAV payload
            language: Language hint, or "auto"
            timeout: Maximum wall-clock time in seconds

        Returns:
            EngineResult with text, confidence and segments

        Raises:
            AuthError: If no credential is configured or it is rejected
            TransientError: On timeout, network failure or an unclassified error
            TranscriptionError: For any other classified failure
        """
        if not self.configured:
            raise AuthError(f"{self.name} API key is not configured")

        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self.executor, self._transcribe_sync, audio_bytes, language),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            # The executor thread finishes on its own; its result is dropped.
            raise TransientError(f"{self.name} request timed out after {timeout} seconds") from e
        except TranscriptionError:
            raise
        except Exception as e:
            logger.warning("%s transcription failed: %s", self.name, e, exc_info=True)
            raise TransientError(f"{self.name} transcription failed: {e}") from e

    @abstractmethod
    def _transcribe_sync(self, audio_bytes: bytes, language: str) -> EngineResult:
        """Blocking engine call (runs in thread pool)."""

    async def shutdown(self) -> None:
        """Stop the executor if this instance owns it."""
        logger.info("%s transcriber shutting down", self.name)
        if self._executor_owned and self.executor:
            self.executor.shutdown(wait=False)


def classify_status(status_code: int, detail: str, engine: str) -> TranscriptionError:
    """Map an HTTP status from an engine to the error taxonomy."""
    if status_code in (401, 403):
        return AuthError(f"Invalid {engine} API key ({status_code})")
    if status_code == 429:
        return RateLimitedError(f"{engine} API rate limit exceeded")
    if status_code >= 500 or status_code == 408:
        return TransientError(f"{engine} server error: {status_code}")
    return FatalError(f"{engine} API error ({status_code}): {detail}")


def create_transcriber(config) -> Transcriber:
    """Build the engine selected by ``config.engine.backend``.

    Uses lazy imports so the unused client library is never loaded.
    """
    backend = config.engine.backend
    workers = config.dispatcher.concurrency

    if backend == "deepgram":
        from conversation_scribe.transcriber_deepgram import DeepgramTranscriber

        transcriber = DeepgramTranscriber(
            api_key=config.deepgram.api_key,
            model=config.deepgram.model,
            smart_format=config.deepgram.smart_format,
            punctuate=config.deepgram.punctuate,
            max_workers=workers,
        )
    elif backend == "openai":
        from conversation_scribe.transcriber_openai import OpenAITranscriber

        transcriber = OpenAITranscriber(
            api_key=config.openai.api_key,
            model=config.openai.model,
            base_url=config.openai.base_url,
            max_workers=workers,
        )
    else:
        raise ValueError(f"Unknown backend: {backend!r}. Valid options: openai, deepgram")

    logger.info("Transcription engine: %s", type(transcriber).__name__)
    return transcriber
