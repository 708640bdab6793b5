"""Tests for main CLI module."""

import json
import logging
import wave
from unittest.mock import AsyncMock, Mock, patch

import numpy as np
import pytest
from typer.testing import CliRunner

from conversation_scribe._types import EngineResult
from conversation_scribe.main import _parse_speaker_files, app
from conversation_scribe.config import ConfigError

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    """Config with fast timers and a temp session directory."""
    path = tmp_path / "scribe.toml"
    path.write_text(
        f"""
[chunking]
silence_timeout = 0.1

[dispatcher]
min_request_interval = 0.0

[coordinator]
session_dir = "{tmp_path / 'sessions'}"

[openai]
api_key = "sk-test"
"""
    )
    return path


@pytest.fixture
def wav_file(tmp_path):
    path = tmp_path / "speaker.wav"
    with wave.open(str(path), "wb") as wav_file:
        wav_file.setnchannels(1)
        wav_file.setsampwidth(2)
        wav_file.setframerate(16000)
        wav_file.writeframes((np.full(16000, 0.3) * 32767).astype("<i2").tobytes())
    return path


@pytest.fixture
def mock_transcriber():
    mock = Mock()
    mock.configured = True
    mock.transcribe = AsyncMock(return_value=EngineResult(text="selling the 450 calls", language="en", confidence=0.9))
    mock.shutdown = AsyncMock()
    return mock


def _session_record(session_id: str = "sess-1") -> dict:
    return {
        "version": 1,
        "session_id": session_id,
        "merger": {
            "segments": [
                {
                    "speaker": "Alice",
                    "text": "Selling the 450 calls",
                    "topic": "Options",
                    "start_time": 0.0,
                    "end_time": 1.0,
                    "duration_seconds": 1.0,
                    "confidence": 0.9,
                    "stream_id": "alice-key",
                }
            ],
            "last_index": {"alice-key": 0},
        },
        "accountant": {"total_seconds": 60.0, "chunks_recorded": 1, "cost_per_minute": 0.006},
    }


class TestParseSpeakerFiles:
    """Test --speaker option parsing."""

    def test_valid(self, wav_file):
        assert _parse_speaker_files([f"s1={wav_file}"]) == {"s1": wav_file}

    @pytest.mark.parametrize("spec", ["no-equals", "=file.wav", "key="])
    def test_malformed(self, spec):
        with pytest.raises(ConfigError):
            _parse_speaker_files([spec])

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            _parse_speaker_files([f"s1={tmp_path / 'missing.wav'}"])

    def test_duplicate_key(self, wav_file):
        with pytest.raises(ConfigError, match="more than once"):
            _parse_speaker_files([f"s1={wav_file}", f"s1={wav_file}"])


class TestRunCommand:
    """Tests for run command."""

    def test_run_replays_and_saves(self, config_file, wav_file, mock_transcriber, tmp_path):
        with patch("conversation_scribe.main.create_transcriber", return_value=mock_transcriber):
            result = runner.invoke(
                app,
                [
                    "run",
                    "--config", str(config_file),
                    "--speaker", f"s1={wav_file}",
                    "--speed", "0",
                    "--session-id", "replay-1",
                ],
            )

        assert result.exit_code == 0, result.output
        assert "Selling the 450 calls" in result.stdout
        assert "Session replay-1: 1 segment(s)" in result.stdout
        saved = json.loads((tmp_path / "sessions" / "replay-1.json").read_text())
        assert saved["session_id"] == "replay-1"
        assert len(saved["merger"]["segments"]) == 1

    def test_run_no_save(self, config_file, wav_file, mock_transcriber, tmp_path):
        with patch("conversation_scribe.main.create_transcriber", return_value=mock_transcriber):
            result = runner.invoke(
                app,
                ["run", "--config", str(config_file), "-s", f"s1={wav_file}", "--speed", "0", "--no-save"],
            )

        assert result.exit_code == 0, result.output
        assert not (tmp_path / "sessions").exists()

    def test_run_bad_speaker_option(self, config_file):
        result = runner.invoke(app, ["run", "--config", str(config_file), "--speaker", "broken"])
        assert result.exit_code == 1

    def test_run_negative_speed(self, config_file, wav_file):
        result = runner.invoke(
            app, ["run", "--config", str(config_file), "--speaker", f"s1={wav_file}", "--speed", "-1"]
        )
        assert result.exit_code == 1

    def test_run_requires_speaker(self, config_file):
        result = runner.invoke(app, ["run", "--config", str(config_file)])
        assert result.exit_code != 0


class TestShowSessionCommand:
    """Tests for show-session command."""

    @patch("conversation_scribe.main.JsonSessionStore")
    def test_text_output(self, mock_store_class, config_file):
        mock_store_class.return_value.load.return_value = _session_record()

        result = runner.invoke(app, ["show-session", "sess-1", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Session sess-1" in result.stdout
        assert "Alice (Options, 90%): Selling the 450 calls" in result.stdout
        assert "est. cost $0.0060" in result.stdout

    @patch("conversation_scribe.main.JsonSessionStore")
    def test_json_output(self, mock_store_class, config_file):
        mock_store_class.return_value.load.return_value = _session_record()

        result = runner.invoke(app, ["show-session", "sess-1", "--config", str(config_file), "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["session_id"] == "sess-1"
        assert data["segments"][0]["speaker"] == "Alice"
        assert data["estimated_cost_usd"] == pytest.approx(0.006)

    @patch("conversation_scribe.main.JsonSessionStore")
    def test_missing_session(self, mock_store_class, config_file):
        mock_store_class.return_value.load.return_value = None
        result = runner.invoke(app, ["show-session", "nope", "--config", str(config_file)])
        assert result.exit_code == 1


class TestListSessionsCommand:
    """Tests for list-sessions command."""

    @patch("conversation_scribe.main.JsonSessionStore")
    def test_lists_ids(self, mock_store_class, config_file):
        mock_store_class.return_value.list_sessions.return_value = ["a", "b"]
        result = runner.invoke(app, ["list-sessions", "--config", str(config_file)])
        assert result.exit_code == 0
        assert result.stdout.splitlines()[-2:] == ["a", "b"]


class TestCheckConfigCommand:
    """Tests for check-config command."""

    def test_valid_config(self, config_file):
        result = runner.invoke(app, ["check-config", "--config", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration OK" in result.stdout
        assert "Engine: openai" in result.stdout

    def test_missing_key(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        path = tmp_path / "scribe.toml"
        path.write_text("[engine]\nbackend = \"openai\"\n")
        result = runner.invoke(app, ["check-config", "--config", str(path)])
        assert result.exit_code == 1

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["check-config", "--config", str(tmp_path / "nope.toml")])
        assert result.exit_code == 1


class TestGeneralConfig:
    """Test [general] settings reach the CLI."""

    @pytest.fixture(autouse=True)
    def restore_root_level(self):
        root = logging.getLogger()
        level = root.level
        yield
        root.setLevel(level)

    def test_verbose_from_config_enables_debug(self, tmp_path):
        path = tmp_path / "scribe.toml"
        path.write_text(f"[general]\nverbose = true\n\n[coordinator]\nsession_dir = \"{tmp_path}\"\n")
        logging.getLogger().setLevel(logging.INFO)

        result = runner.invoke(app, ["list-sessions", "--config", str(path)])

        assert result.exit_code == 0
        assert logging.getLogger().level == logging.DEBUG

    def test_verbose_off_leaves_level(self, config_file):
        logging.getLogger().setLevel(logging.INFO)

        result = runner.invoke(app, ["list-sessions", "--config", str(config_file)])

        assert result.exit_code == 0
        assert logging.getLogger().level == logging.INFO

    def test_unknown_general_key_rejected(self, tmp_path):
        path = tmp_path / "scribe.toml"
        path.write_text("[general]\ndebug = true\n")
        result = runner.invoke(app, ["check-config", "--config", str(path)])
        assert result.exit_code == 1
