"""Central async pipeline coordinating buffering, dispatch and merging."""

import asyncio
import base64
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import numpy as np

from conversation_scribe._types import (
    AudioEvent,
    ConversationSegment,
    CredentialsUpdate,
    ErrorKind,
    ErrorNotice,
    FinalizeRequest,
    FlushReason,
    PipelineEvent,
    PipelineStatus,
    StopRequest,
    TranscriptFragment,
    TranscriptionTask,
)
from conversation_scribe.accounting import SessionAccountant
from conversation_scribe.chunk_policy import ActivityTracker, ChunkBoundaryPolicy, Trigger
from conversation_scribe.config import Config
from conversation_scribe.dispatcher import TranscriptionDispatcher
from conversation_scribe.merger import MergeOutcome, SegmentMerger
from conversation_scribe.speaker_buffer import SpeakerBuffer
from conversation_scribe.speakers import SpeakerDirectory
from conversation_scribe.transcriber import Transcriber

logger = logging.getLogger(__name__)

RECORD_VERSION = 1


class State(Enum):
    """Coordinator lifecycle state."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    SHUTDOWN = "shutdown"


@dataclass
class SpeakerTimers:
    """Pending timer handles for one speaker."""

    silence: asyncio.TimerHandle | None = None
    deferred: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        for handle in (self.silence, self.deferred):
            if handle is not None:
                handle.cancel()
        self.silence = None
        self.deferred = None


class PipelineCoordinator:
    """Owns per-speaker state and wires buffer, policy, dispatcher and merger.

    All mutation happens on the event loop thread: audio events, timer
    callbacks, sweeps and dispatcher completions are all loop callbacks, so
    the buffer map and timer table need no locking.
    """

    def __init__(
        self,
        transcriber: Transcriber,
        config: Config | None = None,
        *,
        session_id: str | None = None,
        on_segment: Callable[[ConversationSegment, bool], None] | None = None,
        on_status: Callable[[PipelineStatus], None] | None = None,
        on_error: Callable[[ErrorNotice], None] | None = None,
        on_telemetry: Callable[[ErrorNotice], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize coordinator with its collaborators.

        Args:
            transcriber: Engine used by the dispatcher
            config: Full configuration (defaults when omitted)
            session_id: Key under which the session is persisted
            on_segment: Receives each new or extended segment and a merged flag
            on_status: Receives a status snapshot after every sweep
            on_error: Receives user-visible notices (configuration, permanent)
            on_telemetry: Receives transient and validation notices
            clock: Monotonic clock for activity and idle tracking
        """
        self.config = config or Config()
        self.session_id = session_id or uuid.uuid4().hex
        self.on_segment = on_segment
        self.on_status = on_status
        self.on_error = on_error
        self.on_telemetry = on_telemetry
        self._clock = clock

        self.buffers = SpeakerBuffer(
            sample_rate=self.config.buffer.sample_rate,
            max_buffer_seconds=self.config.buffer.max_buffer_seconds,
        )
        self.activity = ActivityTracker(window=self.config.chunking.activity_window)
        self.policy = ChunkBoundaryPolicy(self.config.chunking)
        self.dispatcher = TranscriptionDispatcher(
            transcriber,
            self.config.dispatcher,
            language=self.config.engine.language,
            on_notice=self._handle_notice,
        )
        self.speakers = SpeakerDirectory(self.config.speakers)
        self.merger = SegmentMerger(self.speakers, self.config.merger)
        self.accountant = SessionAccountant(self.config.accounting.cost_per_minute)

        self.state = State.IDLE
        self._timers: dict[str, SpeakerTimers] = {}
        self._consumers: set[asyncio.Task] = set()
        self._sweep_task: asyncio.Task | None = None
        self._blocked_reported = False

        logger.info("PipelineCoordinator initialized (session=%s)", self.session_id)

    async def start(self) -> None:
        """Start dispatcher workers and the periodic sweep."""
        if self.state is State.RUNNING:
            return
        logger.info("Pipeline starting")
        self.dispatcher.start()
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="pipeline-sweep")
        self.state = State.RUNNING
        if self.dispatcher.blocked:
            self._report_blocked()

    async def stop(self) -> None:
        """Finalize every buffer and shut the pipeline down.

        Queued tasks still waiting after the dispatcher's grace period are
        cancelled; calls already on the wire finish on their own.
        """
        if self.state in (State.STOPPING, State.SHUTDOWN):
            return
        logger.info("Pipeline shutdown starting")
        self.state = State.STOPPING

        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None

        for timers in self._timers.values():
            timers.cancel()

        # Final flushes still need workers if the pipeline was never started.
        if not self.dispatcher.running:
            self.dispatcher.start()
        await self.finalize_all()
        await self.dispatcher.shutdown()
        if self._consumers:
            await asyncio.gather(*list(self._consumers), return_exceptions=True)

        self.state = State.SHUTDOWN
        self._publish_status()
        logger.info(
            "Pipeline shutdown complete: %d segments, %.1fs processed, est. $%.4f",
            len(self.merger),
            self.accountant.total_seconds,
            self.accountant.estimated_cost_usd(),
        )

    async def handle(self, event: PipelineEvent) -> None:
        """Dispatch one inbound event."""
        match event:
            case AudioEvent():
                self.on_audio(event)
            case FinalizeRequest():
                await self.finalize_all()
            case StopRequest():
                await self.stop()
            case CredentialsUpdate(api_key=api_key):
                self.update_credentials(api_key)
            case _:
                raise TypeError(f"Unsupported pipeline event: {event!r}")

    def on_audio(self, event: AudioEvent) -> None:
        """Buffer an audio event and flush if a boundary is reached."""
        if self.state in (State.STOPPING, State.SHUTDOWN):
            logger.debug("Pipeline stopping, ignoring audio from %s", event.speaker_key)
            return

        key = event.speaker_key
        now = self._clock()
        self.activity.record(key, event.vad.is_voice, now)
        state = self.buffers.append(key, event.samples, event.sample_rate_hz, event.timestamp, now)
        self._arm_silence_timer(key)

        level = self.activity.level(now, exclude=key)
        reason = self.policy.evaluate(state, now, level, Trigger.EVENT)
        if reason is not None:
            self._request_flush(key, reason)

    async def finalize_all(self) -> None:
        """Force-flush every non-empty buffer regardless of thresholds."""
        logger.info("Finalizing all active speaker buffers")
        for key in self.buffers.keys():
            timers = self._timers.get(key)
            if timers:
                timers.cancel()
            if self.buffers.duration(key) == 0:
                continue
            await self.dispatcher.wait_for_speaker(key)
            self._request_flush(key, FlushReason.FINAL)

    def sweep(self) -> None:
        """Catch idle-timeout flushes, evict stale speakers, publish status."""
        now = self._clock()
        eviction_window = self.config.coordinator.eviction_window

        for key in self.buffers.keys():
            state = self.buffers.peek_state(key)
            if state is None:
                continue

            level = self.activity.level(now, exclude=key)
            reason = self.policy.evaluate(state, now, level, Trigger.SWEEP)
            if reason is not None:
                self._request_flush(key, reason)
                continue

            idle = now - state.last_activity_time
            if idle >= eviction_window and not self.dispatcher.is_in_flight(key):
                self._evict(key, idle)

        self._publish_status()

    def status(self) -> PipelineStatus:
        now = self._clock()
        return PipelineStatus(
            is_processing=self.dispatcher.in_flight_count > 0,
            buffer_seconds_per_speaker=self.buffers.durations(),
            activity_level=self.activity.level(now),
            queue_depth=self.dispatcher.queue_depth,
            in_flight=self.dispatcher.in_flight_count,
            segment_count=len(self.merger),
            session_cost_usd=self.accountant.estimated_cost_usd(),
        )

    @property
    def segments(self) -> list[ConversationSegment]:
        return self.merger.segments

    def update_credentials(self, api_key: str) -> None:
        self.dispatcher.transcriber.update_credentials(api_key)
        self._blocked_reported = False
        logger.info("Credentials updated, dispatch unblocked")

    def _arm_silence_timer(self, key: str) -> None:
        timers = self._timers.setdefault(key, SpeakerTimers())
        if timers.silence is not None:
            timers.silence.cancel()
        loop = asyncio.get_running_loop()
        timers.silence = loop.call_later(
            self.config.chunking.silence_timeout, self._on_silence_timer, key
        )

    def _on_silence_timer(self, key: str) -> None:
        timers = self._timers.get(key)
        if timers is not None:
            timers.silence = None
        if self.state is not State.RUNNING:
            return

        now = self._clock()
        state = self.buffers.peek_state(key)
        level = self.activity.level(now, exclude=key)
        reason = self.policy.evaluate(state, now, level, Trigger.SILENCE_TIMER)
        if reason is not None:
            self._request_flush(key, reason)

    def _defer(self, key: str, reason: FlushReason) -> None:
        timers = self._timers.setdefault(key, SpeakerTimers())
        if timers.deferred is not None:
            return
        logger.debug("Speaker %s busy, deferring %s flush", key, reason.value)
        loop = asyncio.get_running_loop()
        timers.deferred = loop.call_later(
            self.config.dispatcher.admission_retry_delay, self._on_deferred, key, reason
        )

    def _on_deferred(self, key: str, reason: FlushReason) -> None:
        timers = self._timers.get(key)
        if timers is not None:
            timers.deferred = None
        if self.state is not State.RUNNING:
            return
        self._request_flush(key, reason)

    def _request_flush(self, key: str, reason: FlushReason) -> None:
        if self.dispatcher.blocked:
            self._report_blocked()
            return
        if self.dispatcher.is_in_flight(key):
            self._defer(key, reason)
            return

        state = self.buffers.peek_state(key)
        if state is None or state.is_empty:
            return
        sample_rate = state.sample_rate_hz
        start_time = state.start_time if state.start_time is not None else 0.0
        samples = self.buffers.flush(key)
        if samples is None:
            return

        timers = self._timers.get(key)
        if timers is not None and timers.silence is not None:
            timers.silence.cancel()
            timers.silence = None

        if self.policy.is_silent(samples):
            logger.info(
                "Skipped silent chunk for %s (%.2fs, reason=%s)",
                key,
                len(samples) / sample_rate,
                reason.value,
            )
            return

        task = TranscriptionTask(
            speaker_key=key,
            audio_samples=samples,
            sample_rate_hz=sample_rate,
            start_time=start_time,
            enqueue_time=self._clock(),
            reason=reason,
        )
        future = self.dispatcher.submit(task)
        consumer = asyncio.create_task(self._consume(task, future))
        self._consumers.add(consumer)
        consumer.add_done_callback(self._consumers.discard)
        logger.debug("Flushed %.2fs for %s (reason=%s)", task.duration_seconds, key, reason.value)

    async def _consume(self, task: TranscriptionTask, future: asyncio.Future) -> None:
        try:
            fragment: TranscriptFragment | None = await future
        except asyncio.CancelledError:
            logger.info("Task for %s cancelled before dispatch", task.speaker_key)
            return
        if fragment is None:
            return

        outcome = self.merger.reconcile(fragment)
        self.accountant.record(fragment.duration_seconds)
        if outcome is not None:
            self._emit_segment(outcome)

    def _evict(self, key: str, idle: float) -> None:
        state = self.buffers.remove(key)
        timers = self._timers.pop(key, None)
        if timers is not None:
            timers.cancel()
        if state is not None and not state.is_empty:
            logger.warning(
                "Evicted speaker %s after %.0fs idle, discarding %.2fs below flush floor",
                key,
                idle,
                state.accumulated_duration_seconds,
            )
        else:
            logger.info("Evicted idle speaker %s after %.0fs", key, idle)

    def _report_blocked(self) -> None:
        if self._blocked_reported:
            return
        self._blocked_reported = True
        logger.error("Transcription blocked: engine API key is not configured")
        self._handle_notice(
            ErrorNotice(
                kind=ErrorKind.CONFIGURATION,
                message="Transcription API key is not set; audio is buffered until it is configured.",
            )
        )

    def _handle_notice(self, notice: ErrorNotice) -> None:
        listener = self.on_error if notice.user_visible else self.on_telemetry
        logger.debug("Pipeline notice (%s): %s", notice.kind.value, notice.message)
        self._notify(listener, notice)

    def _emit_segment(self, outcome: MergeOutcome) -> None:
        self._notify(self.on_segment, outcome.segment, outcome.merged)

    def _publish_status(self) -> None:
        if self.on_status is not None:
            self._notify(self.on_status, self.status())

    def _notify(self, listener: Callable | None, *args) -> None:
        if listener is None:
            return
        try:
            listener(*args)
        except Exception as e:
            logger.warning("Pipeline listener raised: %s", e, exc_info=True)

    async def _sweep_loop(self) -> None:
        interval = self.config.coordinator.sweep_interval
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error("Error in sweep: %s", e, exc_info=True)

    def dehydrate(self) -> dict:
        """Capture the complete pipeline state as plain data.

        Audio of tasks that are still queued or running is included so a
        restored pipeline re-submits it.
        """
        pending = [
            {
                "speaker_key": task.speaker_key,
                "sample_rate_hz": task.sample_rate_hz,
                "start_time": task.start_time,
                "samples": base64.b64encode(task.audio_samples.astype("<f4").tobytes()).decode("ascii"),
            }
            for task in self.dispatcher.unfinished_tasks()
        ]
        return {
            "version": RECORD_VERSION,
            "session_id": self.session_id,
            "saved_at": time.time(),
            "clock": self._clock(),
            "buffers": self.buffers.to_record(),
            "pending": pending,
            "activity": self.activity.to_record(),
            "merger": self.merger.to_record(),
            "accountant": self.accountant.to_record(),
            "speakers": self.speakers.to_record(),
        }

    @classmethod
    def rehydrate(
        cls,
        record: dict,
        transcriber: Transcriber,
        config: Config | None = None,
        **kwargs,
    ) -> "PipelineCoordinator":
        """Build an equivalent pipeline from a dehydrated record.

        Idle clocks restart at restore time and the activity window is
        shifted onto the current clock.
        """
        version = record.get("version")
        if version != RECORD_VERSION:
            raise ValueError(f"Unsupported session record version: {version!r}")

        coordinator = cls(transcriber, config, session_id=record.get("session_id"), **kwargs)
        now = coordinator._clock()

        coordinator.buffers = SpeakerBuffer.from_record(
            record.get("buffers", {}),
            sample_rate=coordinator.config.buffer.sample_rate,
            max_buffer_seconds=coordinator.config.buffer.max_buffer_seconds,
        )
        for entry in record.get("pending", []):
            samples = np.frombuffer(base64.b64decode(entry["samples"]), dtype="<f4").astype(np.float32)
            coordinator.buffers.prepend(
                entry["speaker_key"], samples, entry["sample_rate_hz"], entry["start_time"], now=now
            )
        for key in coordinator.buffers.keys():
            state = coordinator.buffers.peek_state(key)
            state.last_activity_time = now
            if not state.is_empty:
                state.opened_at = now

        offset = now - float(record.get("clock", now))
        coordinator.activity.restore(
            [[t + offset, key, voice] for t, key, voice in record.get("activity", [])]
        )
        coordinator.merger.restore(record.get("merger", {}))
        coordinator.accountant = SessionAccountant.from_record(
            record.get("accountant", {}), coordinator.config.accounting.cost_per_minute
        )
        coordinator.speakers.restore(record.get("speakers", {}))
        logger.info(
            "Rehydrated session %s: %d buffers, %d segments",
            coordinator.session_id,
            len(coordinator.buffers),
            len(coordinator.merger),
        )
        return coordinator
