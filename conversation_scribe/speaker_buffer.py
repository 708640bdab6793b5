"""Per-speaker audio buffering."""

import base64
import logging
from dataclasses import dataclass, field

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class SpeakerBufferState:
    """Buffered audio and activity stamps for one speaker key.

    Duration is always derived from the sample count so it cannot drift.
    """

    sample_rate_hz: int
    start_time: float | None = None
    last_activity_time: float = 0.0
    opened_at: float | None = None
    blocks: list[np.ndarray] = field(default_factory=list)
    sample_count: int = 0

    @property
    def accumulated_duration_seconds(self) -> float:
        return self.sample_count / self.sample_rate_hz

    @property
    def is_empty(self) -> bool:
        return self.sample_count == 0

    def samples(self) -> np.ndarray:
        if not self.blocks:
            return np.zeros(0, dtype=np.float32)
        if len(self.blocks) > 1:
            self.blocks = [np.concatenate(self.blocks)]
        return self.blocks[0]

    def clear(self) -> None:
        self.blocks = []
        self.sample_count = 0
        self.start_time = None
        self.opened_at = None


class SpeakerBuffer:
    """Accumulates raw samples per speaker until they are flushed.

    Never blocks and has no error conditions: flushing an unknown or empty
    speaker simply returns None.
    """

    def __init__(self, sample_rate: int = 16000, max_buffer_seconds: float = 60.0):
        self.sample_rate = sample_rate
        self.max_buffer_seconds = max_buffer_seconds
        self._states: dict[str, SpeakerBufferState] = {}

    def __contains__(self, speaker_key: str) -> bool:
        return speaker_key in self._states

    def __len__(self) -> int:
        return len(self._states)

    def keys(self) -> list[str]:
        return list(self._states)

    def peek_state(self, speaker_key: str) -> SpeakerBufferState | None:
        return self._states.get(speaker_key)

    def append(
        self,
        speaker_key: str,
        samples: np.ndarray,
        sample_rate_hz: int | None = None,
        timestamp: float = 0.0,
        now: float = 0.0,
    ) -> SpeakerBufferState:
        """Append samples for one speaker and stamp its activity time.

        Args:
            speaker_key: Sub-stream identifier
            samples: Mono float32 samples in [-1, 1]
            sample_rate_hz: Rate of ``samples``; defaults to the buffer rate
            timestamp: Capture time of the first sample in ``samples``
            now: Current clock reading for the activity stamp

        Returns:
            The speaker's updated state
        """
        rate = sample_rate_hz or self.sample_rate
        state = self._states.get(speaker_key)
        if state is None:
            state = SpeakerBufferState(sample_rate_hz=rate)
            self._states[speaker_key] = state
            logger.debug("Created buffer for speaker %s (%d Hz)", speaker_key, rate)
        elif state.is_empty:
            state.sample_rate_hz = rate

        block = np.asarray(samples, dtype=np.float32).reshape(-1)
        if rate != state.sample_rate_hz:
            block = _resample(block, rate, state.sample_rate_hz)

        state.last_activity_time = now

        if block.size:
            if state.start_time is None:
                state.start_time = timestamp
                state.opened_at = now
            state.blocks.append(block.copy())
            state.sample_count += block.size
            self._enforce_cap(speaker_key, state)

        return state

    def prepend(
        self,
        speaker_key: str,
        samples: np.ndarray,
        sample_rate_hz: int,
        start_time: float,
        now: float = 0.0,
    ) -> SpeakerBufferState:
        """Put earlier audio back in front of whatever is buffered.

        Used when restoring chunks that were queued but never transcribed.
        """
        existing = self.flush(speaker_key)
        previous = self._states.get(speaker_key)
        last_activity = previous.last_activity_time if previous else now
        existing_rate = previous.sample_rate_hz if previous else sample_rate_hz

        state = self.append(speaker_key, samples, sample_rate_hz, timestamp=start_time, now=now)
        if existing is not None:
            if existing_rate != state.sample_rate_hz:
                existing = _resample(existing, existing_rate, state.sample_rate_hz)
            state.blocks.append(existing)
            state.sample_count += existing.size
            self._enforce_cap(speaker_key, state)
        state.last_activity_time = max(last_activity, now)
        return state

    def flush(self, speaker_key: str) -> np.ndarray | None:
        """Extract and clear all buffered samples for a speaker.

        Returns:
            The concatenated samples, or None if nothing is buffered
        """
        state = self._states.get(speaker_key)
        if state is None or state.is_empty:
            return None

        samples = state.samples()
        state.clear()
        return samples

    def duration(self, speaker_key: str) -> float:
        state = self._states.get(speaker_key)
        return state.accumulated_duration_seconds if state else 0.0

    def remove(self, speaker_key: str) -> SpeakerBufferState | None:
        return self._states.pop(speaker_key, None)

    def durations(self) -> dict[str, float]:
        return {key: state.accumulated_duration_seconds for key, state in self._states.items()}

    def _enforce_cap(self, speaker_key: str, state: SpeakerBufferState) -> None:
        max_samples = int(self.max_buffer_seconds * state.sample_rate_hz)
        excess = state.sample_count - max_samples
        if excess <= 0:
            return

        samples = state.samples()[excess:]
        state.blocks = [samples]
        state.sample_count = samples.size
        if state.start_time is not None:
            state.start_time += excess / state.sample_rate_hz
        logger.warning(
            "Buffer for speaker %s exceeded %.0fs, dropped %.2fs of oldest audio",
            speaker_key,
            self.max_buffer_seconds,
            excess / state.sample_rate_hz,
        )

    def to_record(self) -> dict:
        """Serialize every speaker's state to plain data."""
        record = {}
        for key, state in self._states.items():
            record[key] = {
                "sample_rate_hz": state.sample_rate_hz,
                "start_time": state.start_time,
                "last_activity_time": state.last_activity_time,
                "opened_at": state.opened_at,
                "samples": base64.b64encode(state.samples().astype("<f4").tobytes()).decode("ascii"),
            }
        return record

    @classmethod
    def from_record(
        cls,
        record: dict,
        sample_rate: int = 16000,
        max_buffer_seconds: float = 60.0,
    ) -> "SpeakerBuffer":
        buffer = cls(sample_rate=sample_rate, max_buffer_seconds=max_buffer_seconds)
        for key, data in record.items():
            samples = np.frombuffer(base64.b64decode(data["samples"]), dtype="<f4").astype(np.float32)
            state = SpeakerBufferState(
                sample_rate_hz=data["sample_rate_hz"],
                start_time=data.get("start_time"),
                last_activity_time=data.get("last_activity_time", 0.0),
                opened_at=data.get("opened_at"),
            )
            if samples.size:
                state.blocks = [samples]
                state.sample_count = samples.size
            else:
                state.start_time = None
                state.opened_at = None
            buffer._states[key] = state
        return buffer


def _resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linear-interpolation resampling."""
    if samples.size == 0:
        return samples
    target_len = max(1, int(round(samples.size * to_rate / from_rate)))
    positions = np.linspace(0, samples.size - 1, target_len)
    return np.interp(positions, np.arange(samples.size), samples).astype(np.float32)
