"""Shared types and dataclasses for cross-module use."""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum

import numpy as np


class VadQuality(Enum):
    """Upstream estimate of how trustworthy a VAD verdict is."""

    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"


@dataclass(frozen=True)
class VadResult:
    """Voice activity verdict for one audio block."""

    is_voice: bool
    probability: float = 0.0
    quality: VadQuality = VadQuality.FAIR


@dataclass(frozen=True)
class AudioEvent:
    """One block of samples from a single speaker's sub-stream."""

    speaker_key: str
    samples: np.ndarray
    sample_rate_hz: int
    timestamp: float
    vad: VadResult

    @property
    def duration_seconds(self) -> float:
        return len(self.samples) / self.sample_rate_hz


@dataclass(frozen=True)
class FinalizeRequest:
    """Force-flush every non-empty buffer (capture stopped)."""


@dataclass(frozen=True)
class StopRequest:
    """Finalize and shut the pipeline down."""


@dataclass(frozen=True)
class CredentialsUpdate:
    """New API credential for the transcription engine."""

    api_key: str


PipelineEvent = AudioEvent | FinalizeRequest | StopRequest | CredentialsUpdate


class FlushReason(Enum):
    """Why a speaker buffer was flushed."""

    CHUNK_READY = "chunk-ready"
    SILENCE = "silence"
    TIMEOUT = "timeout"
    PERIODIC = "periodic"
    FINAL = "final"


class ActivityLevel(Enum):
    """Cross-speaker activity in the trailing window."""

    NONE = "none"
    LOW = "low"
    HIGH = "high"


@dataclass(frozen=True)
class TranscriptionTask:
    """A flushed chunk on its way to the transcription engine."""

    speaker_key: str
    audio_samples: np.ndarray
    sample_rate_hz: int
    start_time: float
    enqueue_time: float
    reason: FlushReason
    attempt: int = 1

    @property
    def duration_seconds(self) -> float:
        return len(self.audio_samples) / self.sample_rate_hz

    def next_attempt(self) -> "TranscriptionTask":
        """Return a copy of the task for the following attempt."""
        return dataclasses.replace(self, attempt=self.attempt + 1)


@dataclass(frozen=True)
class TranscriptFragment:
    """Text returned for one transcription task."""

    speaker_key: str
    text: str
    confidence: float
    duration_seconds: float
    timestamp: float

    @property
    def end_time(self) -> float:
        return self.timestamp + self.duration_seconds


@dataclass
class ConversationSegment:
    """A finalized, possibly multi-fragment, unit of transcript text."""

    speaker: str
    text: str
    topic: str
    start_time: float
    end_time: float
    duration_seconds: float
    confidence: float
    stream_id: str

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ConversationSegment":
        return cls(**data)


@dataclass
class EngineSegment:
    """A timed piece of an engine response."""

    text: str
    start: float
    end: float
    confidence: float = 0.0


@dataclass
class EngineResult:
    """Result from a transcription engine call."""

    text: str
    language: str
    confidence: float = 0.0
    segments: list[EngineSegment] = field(default_factory=list)


@dataclass(frozen=True)
class PipelineStatus:
    """Snapshot published to observers after every sweep."""

    is_processing: bool
    buffer_seconds_per_speaker: dict[str, float]
    activity_level: ActivityLevel
    queue_depth: int
    in_flight: int = 0
    segment_count: int = 0
    session_cost_usd: float = 0.0


class ErrorKind(Enum):
    """Error taxonomy surfaced by the pipeline."""

    CONFIGURATION = "configuration"
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    VALIDATION = "validation"


@dataclass(frozen=True)
class ErrorNotice:
    """Observable error event."""

    kind: ErrorKind
    message: str
    speaker_key: str | None = None

    @property
    def user_visible(self) -> bool:
        return self.kind in (ErrorKind.CONFIGURATION, ErrorKind.PERMANENT)
