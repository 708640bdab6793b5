"""Tests for the transcription dispatcher."""

import asyncio
import time
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest

from conversation_scribe._types import (
    EngineResult,
    EngineSegment,
    ErrorKind,
    FlushReason,
    TranscriptionTask,
)
from conversation_scribe.config import DispatcherConfig
from conversation_scribe.dispatcher import (
    SpeakerBusyError,
    TranscriptionDispatcher,
    backoff_delay,
)
from conversation_scribe.transcriber import AuthError, RateLimitedError, TransientError


def _task(key: str = "s1", seconds: float = 1.0, start_time: float = 0.0) -> TranscriptionTask:
    return TranscriptionTask(
        speaker_key=key,
        audio_samples=np.full(int(seconds * 16000), 0.3, dtype=np.float32),
        sample_rate_hz=16000,
        start_time=start_time,
        enqueue_time=0.0,
        reason=FlushReason.SILENCE,
    )


@pytest.fixture
def mock_transcriber():
    """Create mock engine returning a fixed result."""
    mock = Mock()
    mock.configured = True
    mock.transcribe = AsyncMock(return_value=EngineResult(text="hello there", language="en", confidence=0.9))
    mock.shutdown = AsyncMock()
    return mock


@pytest.fixture
def notices():
    return []


@pytest.fixture
def fake_sleep():
    return AsyncMock()


@pytest.fixture
def dispatcher(mock_transcriber, notices, fake_sleep):
    config = DispatcherConfig(concurrency=2, min_request_interval=0.0, max_attempts=3, base_delay=0.3)
    return TranscriptionDispatcher(
        mock_transcriber,
        config,
        on_notice=notices.append,
        sleep=fake_sleep,
    )


class TestBackoffDelay:
    """Test retry delay growth."""

    def test_delays_double(self):
        delays = [backoff_delay(attempt, 0.3) for attempt in (1, 2, 3)]
        assert delays == pytest.approx([0.3, 0.6, 1.2])
        for previous, current in zip(delays, delays[1:]):
            assert current >= 2 * previous


class TestSubmit:
    """Test successful dispatch and admission."""

    @pytest.mark.asyncio
    async def test_successful_transcription(self, dispatcher, mock_transcriber):
        dispatcher.start()
        fragment = await dispatcher.submit(_task(start_time=12.0))

        assert fragment.text == "hello there"
        assert fragment.speaker_key == "s1"
        assert fragment.timestamp == 12.0
        assert fragment.duration_seconds == pytest.approx(1.0)
        assert fragment.confidence == 0.9
        assert not dispatcher.is_in_flight("s1")

        audio_bytes = mock_transcriber.transcribe.call_args.args[0]
        assert audio_bytes[:4] == b"RIFF"
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_confidence_falls_back_to_segments(self, dispatcher, mock_transcriber):
        mock_transcriber.transcribe.return_value = EngineResult(
            text="hi",
            language="en",
            segments=[EngineSegment("h", 0.0, 0.5, 0.6), EngineSegment("i", 0.5, 1.0, 0.8)],
        )
        dispatcher.start()
        fragment = await dispatcher.submit(_task())
        assert fragment.confidence == pytest.approx(0.7)
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_empty_text_resolves_none(self, dispatcher, mock_transcriber):
        mock_transcriber.transcribe.return_value = EngineResult(text="   ", language="en")
        dispatcher.start()
        assert await dispatcher.submit(_task()) is None
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_second_task_for_speaker_rejected(self, dispatcher):
        first = dispatcher.submit(_task("s1"))
        with pytest.raises(SpeakerBusyError):
            dispatcher.submit(_task("s1"))
        other = dispatcher.submit(_task("s2"))

        assert dispatcher.in_flight_count == 2
        dispatcher.start()
        await asyncio.gather(first, other)
        assert dispatcher.in_flight_count == 0
        await dispatcher.submit(_task("s1"))
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_too_short_chunk_rejected(self, dispatcher, notices, mock_transcriber):
        future = dispatcher.submit(_task(seconds=0.05))

        assert future.done()
        assert future.result() is None
        assert not dispatcher.is_in_flight("s1")
        assert notices[0].kind is ErrorKind.VALIDATION
        mock_transcriber.transcribe.assert_not_called()

    @pytest.mark.asyncio
    async def test_oversized_payload_rejected(self, mock_transcriber, notices):
        config = DispatcherConfig(max_payload_mb=0.01)
        dispatcher = TranscriptionDispatcher(mock_transcriber, config, on_notice=notices.append)
        assert await dispatcher.submit(_task(seconds=1.0)) is None
        assert "payload too large" in notices[0].message

    @pytest.mark.asyncio
    async def test_submit_after_shutdown_raises(self, dispatcher):
        dispatcher.start()
        await dispatcher.shutdown()
        with pytest.raises(RuntimeError):
            dispatcher.submit(_task())


class TestRetries:
    """Test retry and error classification."""

    @pytest.mark.asyncio
    async def test_transient_failures_back_off_then_abandon(self, dispatcher, mock_transcriber, fake_sleep, notices):
        mock_transcriber.transcribe.side_effect = TransientError("server error: 503")
        dispatcher.start()

        assert await dispatcher.submit(_task()) is None

        assert mock_transcriber.transcribe.call_count == 3
        delays = [call.args[0] for call in fake_sleep.call_args_list]
        assert delays == pytest.approx([0.3, 0.6])
        assert [n.kind for n in notices] == [ErrorKind.TRANSIENT, ErrorKind.TRANSIENT, ErrorKind.PERMANENT]
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_succeeds(self, dispatcher, mock_transcriber, fake_sleep):
        mock_transcriber.transcribe.side_effect = [
            RateLimitedError("rate limit exceeded"),
            EngineResult(text="made it", language="en", confidence=0.8),
        ]
        dispatcher.start()

        fragment = await dispatcher.submit(_task())

        assert fragment.text == "made it"
        fake_sleep.assert_awaited_once_with(0.3)
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self, dispatcher, mock_transcriber, fake_sleep, notices):
        mock_transcriber.transcribe.side_effect = AuthError("Invalid API key (401)")
        dispatcher.start()

        assert await dispatcher.submit(_task()) is None

        assert mock_transcriber.transcribe.call_count == 1
        fake_sleep.assert_not_awaited()
        assert notices[-1].kind is ErrorKind.PERMANENT
        assert notices[-1].user_visible
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_unclassified_error_retried(self, dispatcher, mock_transcriber):
        mock_transcriber.transcribe.side_effect = [
            ValueError("boom"),
            EngineResult(text="recovered", language="en"),
        ]
        dispatcher.start()
        fragment = await dispatcher.submit(_task())
        assert fragment.text == "recovered"
        await dispatcher.shutdown()


class TestConcurrency:
    """Test concurrency cap, pacing and shutdown."""

    @pytest.mark.asyncio
    async def test_concurrency_cap(self, dispatcher, mock_transcriber):
        active = 0
        peak = 0

        async def slow_transcribe(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.02)
            active -= 1
            return EngineResult(text="ok", language="en")

        mock_transcriber.transcribe.side_effect = slow_transcribe
        dispatcher.start()
        futures = [dispatcher.submit(_task(f"s{i}")) for i in range(5)]
        await asyncio.gather(*futures)

        assert peak == 2
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_requests_are_paced(self, mock_transcriber):
        starts = []

        async def record_start(*args, **kwargs):
            starts.append(time.monotonic())
            return EngineResult(text="ok", language="en")

        mock_transcriber.transcribe.side_effect = record_start
        config = DispatcherConfig(concurrency=3, min_request_interval=0.05)
        dispatcher = TranscriptionDispatcher(mock_transcriber, config)
        dispatcher.start()
        await asyncio.gather(*(dispatcher.submit(_task(f"s{i}")) for i in range(3)))

        gaps = [b - a for a, b in zip(starts, starts[1:])]
        assert all(gap >= 0.045 for gap in gaps)
        await dispatcher.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_and_lets_running_finish(self, mock_transcriber):
        release = asyncio.Event()

        async def blocking_transcribe(*args, **kwargs):
            await release.wait()
            return EngineResult(text="finished", language="en")

        mock_transcriber.transcribe.side_effect = blocking_transcribe
        config = DispatcherConfig(concurrency=1, min_request_interval=0.0)
        dispatcher = TranscriptionDispatcher(mock_transcriber, config)
        dispatcher.start()

        running = dispatcher.submit(_task("s1"))
        pending = dispatcher.submit(_task("s2"))
        await asyncio.sleep(0.01)
        assert dispatcher.active_calls == 1

        asyncio.get_running_loop().call_later(0.1, release.set)
        await dispatcher.shutdown(grace=0.02)

        assert pending.cancelled()
        assert running.result().text == "finished"
        assert dispatcher.in_flight_count == 0
        mock_transcriber.shutdown.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_wait_for_speaker(self, dispatcher):
        future = dispatcher.submit(_task("s1"))
        dispatcher.start()
        await dispatcher.wait_for_speaker("s1")
        assert future.done()
        await dispatcher.wait_for_speaker("unknown")
        await dispatcher.shutdown()

    def test_blocked_without_credentials(self, mock_transcriber):
        mock_transcriber.configured = False
        assert TranscriptionDispatcher(mock_transcriber).blocked
