"""Replays recorded WAV files as per-speaker audio events."""

import logging
import wave
from collections.abc import Iterator
from pathlib import Path

import numpy as np

from conversation_scribe._types import AudioEvent, VadQuality, VadResult

logger = logging.getLogger(__name__)


def read_wav(path: Path) -> tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV file as mono float32.

    Args:
        path: WAV file path

    Returns:
        Tuple of (samples in [-1, 1], sample rate)

    Raises:
        ValueError: If the file is not 16-bit PCM
        RuntimeError: If the file cannot be read
    """
    try:
        with wave.open(str(path), "rb") as wav_file:
            channels = wav_file.getnchannels()
            sample_width = wav_file.getsampwidth()
            sample_rate = wav_file.getframerate()
            frames = wav_file.readframes(wav_file.getnframes())
    except (OSError, wave.Error) as e:
        logger.error("Failed to read WAV file %s: %s", path, e)
        raise RuntimeError(f"Failed to read WAV file {path}: {e}") from e

    if sample_width != 2:
        raise ValueError(f"{path}: expected 16-bit PCM, got {sample_width * 8}-bit")

    audio = np.frombuffer(frames, dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        audio = audio.reshape(-1, channels).mean(axis=1)

    logger.debug("Read %s: %.2fs at %d Hz, %d channel(s)", path, len(audio) / sample_rate, sample_rate, channels)
    return audio, sample_rate


def placeholder_vad(block: np.ndarray, threshold: float) -> VadResult:
    """Peak-amplitude stand-in for a real voice activity detector."""
    peak = float(np.max(np.abs(block))) if block.size else 0.0
    return VadResult(
        is_voice=peak > threshold,
        probability=min(1.0, peak),
        quality=VadQuality.POOR,
    )


def wav_events(
    speaker_key: str,
    path: Path,
    *,
    event_seconds: float = 0.1,
    silence_threshold: float = 0.001,
    start_time: float = 0.0,
) -> Iterator[AudioEvent]:
    """Slice a WAV file into consecutive audio events for one speaker."""
    if event_seconds <= 0:
        raise ValueError("event_seconds must be positive")

    audio, sample_rate = read_wav(path)
    block_size = max(1, int(event_seconds * sample_rate))
    for offset in range(0, len(audio), block_size):
        block = audio[offset : offset + block_size]
        yield AudioEvent(
            speaker_key=speaker_key,
            samples=block,
            sample_rate_hz=sample_rate,
            timestamp=start_time + offset / sample_rate,
            vad=placeholder_vad(block, silence_threshold),
        )


def interleave(streams: dict[str, list[AudioEvent]]) -> list[AudioEvent]:
    """Merge per-speaker event lists into one list ordered by timestamp."""
    events = [event for stream in streams.values() for event in stream]
    events.sort(key=lambda event: event.timestamp)
    return events
