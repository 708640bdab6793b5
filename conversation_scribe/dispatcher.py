"""Bounded-concurrency, rate-smoothed, retrying transcription dispatch."""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from conversation_scribe._types import (
    EngineResult,
    ErrorKind,
    ErrorNotice,
    TranscriptFragment,
    TranscriptionTask,
)
from conversation_scribe.config import DispatcherConfig
from conversation_scribe.transcriber import (
    Transcriber,
    TranscriptionError,
    encode_wav,
    wav_size_bytes,
)

logger = logging.getLogger(__name__)


class SpeakerBusyError(RuntimeError):
    """A task for this speaker is already queued or running."""


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before retrying after failed attempt number ``attempt`` (1-based)."""
    return base_delay * (2 ** (attempt - 1))


class TranscriptionDispatcher:
    """Submits flushed chunks to the transcription engine.

    Tasks wait in a FIFO queue served by ``concurrency`` workers. Request
    starts are spaced by ``min_request_interval``. At most one task per
    speaker is queued or running at any time.
    """

    def __init__(
        self,
        transcriber: Transcriber,
        config: DispatcherConfig | None = None,
        *,
        language: str = "en",
        on_notice: Callable[[ErrorNotice], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transcriber = transcriber
        self.config = config or DispatcherConfig()
        self.language = language
        self._on_notice = on_notice
        self._clock = clock
        self._sleep = sleep

        self._queue: asyncio.Queue[tuple[TranscriptionTask, asyncio.Future]] = asyncio.Queue()
        self._in_flight: dict[str, asyncio.Future] = {}
        self._tasks: dict[str, TranscriptionTask] = {}
        self._workers: list[asyncio.Task] = []
        self._pace_lock = asyncio.Lock()
        self._last_request_time: float | None = None
        self._active_calls = 0
        self._closing = False

    @property
    def blocked(self) -> bool:
        """True while the engine has no credential; dispatch waits for one."""
        return not self.transcriber.configured

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def active_calls(self) -> int:
        return self._active_calls

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._closing

    def is_in_flight(self, speaker_key: str) -> bool:
        return speaker_key in self._in_flight

    def start(self) -> None:
        """Spawn the worker pool."""
        if self._workers:
            return
        self._closing = False
        for index in range(self.config.concurrency):
            self._workers.append(asyncio.create_task(self._worker(index), name=f"dispatch-worker-{index}"))
        logger.info(
            "Dispatcher started: concurrency=%d, min_interval=%.3fs, max_attempts=%d",
            self.config.concurrency,
            self.config.min_request_interval,
            self.config.max_attempts,
        )

    def submit(self, task: TranscriptionTask) -> asyncio.Future:
        """Queue a task.

        Returns:
            Future resolving to a TranscriptFragment, or None when the task
            was rejected, produced no text or failed permanently. The future
            is cancelled if the task is still queued at shutdown.

        Raises:
            SpeakerBusyError: If the speaker already has a task in flight
            RuntimeError: If the dispatcher is shutting down
        """
        if self._closing:
            raise RuntimeError("Dispatcher is shutting down")
        if task.speaker_key in self._in_flight:
            raise SpeakerBusyError(f"Speaker {task.speaker_key} already has a task in flight")

        future = asyncio.get_running_loop().create_future()

        rejection = self._validate(task)
        if rejection:
            logger.warning("Rejected chunk for %s: %s", task.speaker_key, rejection)
            self._notify(ErrorKind.VALIDATION, rejection, task.speaker_key)
            future.set_result(None)
            return future

        self._in_flight[task.speaker_key] = future
        self._tasks[task.speaker_key] = task
        future.add_done_callback(lambda _f, key=task.speaker_key: self._release(key))
        self._queue.put_nowait((task, future))
        logger.debug(
            "Queued %.2fs chunk for %s (reason=%s, queue=%d)",
            task.duration_seconds,
            task.speaker_key,
            task.reason.value,
            self._queue.qsize(),
        )
        return future

    def unfinished_tasks(self) -> list[TranscriptionTask]:
        """Tasks queued or running, in submission order."""
        return list(self._tasks.values())

    def _release(self, speaker_key: str) -> None:
        self._in_flight.pop(speaker_key, None)
        self._tasks.pop(speaker_key, None)

    async def wait_for_speaker(self, speaker_key: str) -> None:
        """Wait until the speaker's current task reaches a terminal state."""
        future = self._in_flight.get(speaker_key)
        if future is not None:
            await asyncio.wait({future})

    def cancel_pending(self) -> int:
        """Cancel every task that has not been picked up by a worker."""
        cancelled = 0
        while True:
            try:
                task, future = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not future.done():
                future.cancel()
                cancelled += 1
            self._queue.task_done()
        if cancelled:
            logger.info("Cancelled %d pending transcription task(s)", cancelled)
        return cancelled

    async def shutdown(self, grace: float | None = None) -> None:
        """Stop accepting work, drain for ``grace`` seconds, then stop.

        Tasks still queued after the grace period are cancelled; calls
        already running are allowed to finish but are not retried.
        """
        grace = self.config.shutdown_grace if grace is None else grace
        logger.info("Dispatcher shutdown starting (grace=%.1fs)", grace)
        self._closing = True

        try:
            await asyncio.wait_for(self._queue.join(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Dispatcher queue not drained within %.1fs", grace)
            self.cancel_pending()
            await self._queue.join()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        await self.transcriber.shutdown()
        logger.info("Dispatcher shutdown complete")

    def _validate(self, task: TranscriptionTask) -> str | None:
        duration = task.duration_seconds
        if duration < self.config.min_audio_seconds:
            return f"audio too short ({duration:.3f}s < {self.config.min_audio_seconds}s)"
        if duration > self.config.max_audio_seconds:
            return f"audio too long ({duration:.1f}s > {self.config.max_audio_seconds}s)"
        size_mb = wav_size_bytes(len(task.audio_samples)) / (1024 * 1024)
        if size_mb > self.config.max_payload_mb:
            return f"payload too large ({size_mb:.2f}MB > {self.config.max_payload_mb}MB)"
        return None

    async def _worker(self, index: int) -> None:
        while True:
            task, future = await self._queue.get()
            try:
                if future.done():
                    continue
                self._active_calls += 1
                try:
                    result = await self._run(task)
                finally:
                    self._active_calls -= 1
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error("Worker %d failed on task for %s: %s", index, task.speaker_key, e, exc_info=True)
                self._notify(ErrorKind.PERMANENT, f"Transcription failed: {e}", task.speaker_key)
                if not future.done():
                    future.set_result(None)
            finally:
                self._queue.task_done()

    async def _run(self, task: TranscriptionTask) -> TranscriptFragment | None:
        audio_bytes = encode_wav(task.audio_samples, task.sample_rate_hz)

        while True:
            await self._pace()
            logger.debug(
                "Transcribing %.2fs for %s (attempt %d/%d)",
                task.duration_seconds,
                task.speaker_key,
                task.attempt,
                self.config.max_attempts,
            )
            try:
                result = await self.transcriber.transcribe(
                    audio_bytes,
                    language=self.language,
                    timeout=self.config.request_timeout,
                )
            except TranscriptionError as e:
                if not e.retryable:
                    logger.error("Transcription for %s failed permanently: %s", task.speaker_key, e)
                    self._notify(ErrorKind.PERMANENT, str(e), task.speaker_key)
                    return None
                error = e
            except Exception as e:
                error = e
            else:
                return self._to_fragment(task, result)

            if task.attempt >= self.config.max_attempts or self._closing:
                logger.error(
                    "Dropping %.2fs chunk for %s after %d attempt(s): %s",
                    task.duration_seconds,
                    task.speaker_key,
                    task.attempt,
                    error,
                )
                self._notify(
                    ErrorKind.PERMANENT,
                    f"Transcription failed after {task.attempt} attempt(s): {error}",
                    task.speaker_key,
                )
                return None

            delay = backoff_delay(task.attempt, self.config.base_delay)
            logger.warning(
                "Attempt %d/%d for %s failed (%s: %s), retrying in %.2fs",
                task.attempt,
                self.config.max_attempts,
                task.speaker_key,
                type(error).__name__,
                error,
                delay,
            )
            self._notify(ErrorKind.TRANSIENT, f"{type(error).__name__}: {error}", task.speaker_key)
            await self._sleep(delay)
            task = task.next_attempt()

    async def _pace(self) -> None:
        async with self._pace_lock:
            if self._last_request_time is not None:
                wait = self.config.min_request_interval - (self._clock() - self._last_request_time)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_time = self._clock()

    def _to_fragment(self, task: TranscriptionTask, result: EngineResult) -> TranscriptFragment | None:
        text = (result.text or "").strip()
        if not text:
            logger.info("Empty transcription for %s (%.2fs)", task.speaker_key, task.duration_seconds)
            return None

        confidence = result.confidence
        if not confidence and result.segments:
            confidence = sum(s.confidence for s in result.segments) / len(result.segments)

        return TranscriptFragment(
            speaker_key=task.speaker_key,
            text=text,
            confidence=confidence,
            duration_seconds=task.duration_seconds,
            timestamp=task.start_time,
        )

    def _notify(self, kind: ErrorKind, message: str, speaker_key: str | None) -> None:
        if self._on_notice is None:
            return
        try:
            self._on_notice(ErrorNotice(kind=kind, message=message, speaker_key=speaker_key))
        except Exception as e:
            logger.warning("Error listener raised: %s", e)
