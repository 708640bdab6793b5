"""Audio transcription via Deepgram API."""

import asyncio
import logging
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


class DeepgramTranscriber(Transcriber):
    """Encapsulates Deepgram API client and transcription logic.

    Lazy-initializes client on first transcription.
    """

    name = "Deepgram"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "nova-3",
        smart_format: bool = True,
        punctuate: bool = True,
        executor: ThreadPoolExecutor | None = None,
        max_workers: int = 3,
    ):
        """Initialize Deepgram transcriber.

        Args:
            api_key: Deepgram API key
            model: Deepgram model (nova-3, nova-2, whisper-large, etc.)
            smart_format: Enable smart formatting (currency, dates, etc.)
            punctuate: Auto-add punctuation
            executor: Optional ThreadPoolExecutor for transcription tasks
            max_workers: Pool size when no executor is given
        """
        super().__init__(api_key=api_key, executor=executor, max_workers=max_workers)
        self.model = model
        self.smart_format = smart_format
        self.punctuate = punctuate
        self._client = None
        self._client_lock = asyncio.Lock()
        logger.info(
            "DeepgramTranscriber initialized: model=%s, smart_format=%s, punctuate=%s",
            model,
            smart_format,
            punctuate,
        )

    def update_credentials(self, api_key: str) -> None:
        super().update_credentials(api_key)
        self._client = None

    async def _ensure_client_initialized(self) -> None:
        """Lazy-initialize Deepgram client on first use.

        Raises:
            FatalError: If client initialization fails
        """
        async with self._client_lock:
            if self._client is not None:
                return

            logger.info("Initializing Deepgram client with model: %s", self.model)
            try:
                from deepgram import DeepgramClient

                start_time = time.perf_counter()
                self._client = DeepgramClient(api_key=self.api_key)
                logger.info(
                    "Deepgram client initialized in %.3f seconds",
                    time.perf_counter() - start_time,
                )
            except Exception as e:
                logger.error("Failed to initialize Deepgram client: %s", e)
                raise FatalError(f"Failed to initialize Deepgram client: {e}") from e

    async def transcribe(
        self,
        audio_bytes: bytes,
        language: str = "en",
        timeout: float = 30.0,
    ) -> EngineResult:
        if self.configured:
            await self._ensure_client_initialized()
        return await super().transcribe(audio_bytes, language=language, timeout=timeout)

    def _transcribe_sync(self, audio_bytes: bytes, language: str) -> EngineResult:
        """Synchronous transcription using Deepgram API (runs in thread pool)."""
        client = self._client
        if client is None:
            raise FatalError("Deepgram client not initialized")

        options = {
            "model": self.model,
            "smart_format": self.smart_format,
            "punctuate": self.punctuate,
            "utterances": True,
        }
        if language != "auto":
            options["language"] = language

        logger.debug("Deepgram options: %s", options)

        from deepgram.core.api_error import ApiError

        try:
            response = client.listen.v1.media.transcribe_file(request=audio_bytes, **options)
        except ApiError as e:
            raise classify_status(e.status_code or 0, str(e.body), self.name) from e
        except (httpx.TransportError, ConnectionError, OSError) as e:
            raise TransientError(f"Deepgram connection failed: {e}") from e

        channel = response.results.channels[0]
        alternative = channel.alternatives[0]

        detected_language = language
        if language == "auto":
            detected_language = getattr(channel, "detected_language", None) or "en"

        segments = []
        for utt in getattr(response.results, "utterances", None) or []:
            segments.append(
                EngineSegment(
                    text=utt.transcript,
                    start=utt.start,
                    end=utt.end,
                    confidence=getattr(utt, "confidence", 0.0) or 0.0,
                )
            )

        return EngineResult(
            text=(alternative.transcript or "").strip(),
            language=detected_language,
            confidence=getattr(alternative, "confidence", 0.0) or 0.0,
            segments=segments,
        )

    async def shutdown(self) -> None:
        self._client = None
        await super().shutdown()
