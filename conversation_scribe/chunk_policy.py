"""Chunk boundary decisions for buffered speaker audio."""

import logging
from collections import deque
from enum import Enum

import numpy as np

from conversation_scribe._types import ActivityLevel, FlushReason
from conversation_scribe.config import ChunkingConfig
from conversation_scribe.speaker_buffer import SpeakerBufferState

logger = logging.getLogger(__name__)


class Trigger(Enum):
    """What caused a policy evaluation."""

    EVENT = "event"
    SILENCE_TIMER = "silence-timer"
    SWEEP = "sweep"


class ActivityTracker:
    """Trailing window of audio events across all speakers."""

    def __init__(self, window: float = 5.0):
        self.window = window
        self._events: deque[tuple[float, str, bool]] = deque()

    def record(self, speaker_key: str, is_voice: bool, now: float) -> None:
        self._events.append((now, speaker_key, is_voice))
        self._prune(now)

    def level(self, now: float, exclude: str | None = None) -> ActivityLevel:
        """Classify activity in the window.

        Args:
            now: Current clock reading
            exclude: Speaker whose own events are ignored, so a lone speaker
                is judged by what everybody else is doing

        Returns:
            HIGH with two or more distinct speakers or two or more voice
            events, NONE with no events, LOW otherwise
        """
        self._prune(now)
        speakers = set()
        voice_events = 0
        for _, key, is_voice in self._events:
            if key == exclude:
                continue
            speakers.add(key)
            if is_voice:
                voice_events += 1

        if len(speakers) >= 2 or voice_events >= 2:
            return ActivityLevel.HIGH
        if not speakers:
            return ActivityLevel.NONE
        return ActivityLevel.LOW

    def to_record(self) -> list:
        return [list(entry) for entry in self._events]

    def restore(self, record: list) -> None:
        self._events = deque((float(t), str(k), bool(v)) for t, k, v in record)

    def _prune(self, now: float) -> None:
        cutoff = now - self.window
        while self._events and self._events[0][0] < cutoff:
            self._events.popleft()


class ChunkBoundaryPolicy:
    """Decides when a speaker's buffer should be flushed for transcription.

    Three triggers compose first-wins: the hard ceiling and the adaptive
    duration, the silence timeout, and (for sweeps only) a periodic
    fallback for buffers that keep trickling in without ever going idle.
    """

    def __init__(self, config: ChunkingConfig | None = None):
        self.config = config or ChunkingConfig()

    def adaptive_chunk_duration(self, level: ActivityLevel) -> float:
        if level is ActivityLevel.HIGH:
            return self.config.high_activity_chunk
        if level is ActivityLevel.NONE:
            return self.config.idle_chunk
        return (self.config.high_activity_chunk + self.config.idle_chunk) / 2

    def evaluate(
        self,
        state: SpeakerBufferState | None,
        now: float,
        level: ActivityLevel,
        trigger: Trigger = Trigger.EVENT,
    ) -> FlushReason | None:
        """Return the flush reason for a buffer, or None to keep accumulating."""
        if state is None or state.is_empty:
            return None

        duration = state.accumulated_duration_seconds
        if duration >= self.config.max_chunk:
            logger.debug("Hard ceiling reached (%.2fs)", duration)
            return FlushReason.CHUNK_READY

        target = self.adaptive_chunk_duration(level)
        if duration >= target:
            logger.debug("Adaptive chunk ready (%.2fs >= %.2fs, activity=%s)", duration, target, level.value)
            return FlushReason.CHUNK_READY

        if trigger is Trigger.EVENT or duration < self.config.min_chunk:
            return None

        # The timer is re-armed by every event, so firing proves the silence.
        if trigger is Trigger.SILENCE_TIMER:
            return FlushReason.SILENCE

        if now - state.last_activity_time >= self.config.silence_timeout:
            return FlushReason.TIMEOUT

        if state.opened_at is not None:
            age = now - state.opened_at
            if age >= target + self.config.silence_timeout:
                return FlushReason.PERIODIC

        return None

    def is_silent(self, samples: np.ndarray) -> bool:
        """True when no sample reaches the silence threshold."""
        if samples.size == 0:
            return True
        return float(np.max(np.abs(samples))) < self.config.silence_threshold
