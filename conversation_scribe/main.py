"""Typer CLI entrypoint for conversation-scribe."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from conversation_scribe._types import (
    AudioEvent,
    ConversationSegment,
    ErrorNotice,
    StopRequest,
)
from conversation_scribe.config import Config, ConfigError, load_config
from conversation_scribe.coordinator import PipelineCoordinator
from conversation_scribe.replay import interleave, wav_events
from conversation_scribe.storage import JsonSessionStore
from conversation_scribe.transcriber import create_transcriber

app = typer.Typer(help="Multi-speaker conversation transcription pipeline")

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _apply_general_config(cfg: Config, verbose: bool) -> None:
    """Raise the log level when the config file asks for verbose output."""
    if cfg.general.verbose and not verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled by [general] config")


def _parse_speaker_files(specs: list[str]) -> dict[str, Path]:
    """Parse ``KEY=path.wav`` options into a speaker map.

    Raises:
        ConfigError: If an option is malformed, repeated or names a missing file
    """
    speakers: dict[str, Path] = {}
    for spec in specs:
        key, sep, raw_path = spec.partition("=")
        key = key.strip()
        if not sep or not key or not raw_path:
            raise ConfigError(f"Invalid --speaker '{spec}'. Expected KEY=path.wav")
        if key in speakers:
            raise ConfigError(f"Speaker '{key}' given more than once")
        path = Path(raw_path).expanduser()
        if not path.is_file():
            raise ConfigError(f"Audio file not found for speaker '{key}': {path}")
        speakers[key] = path
    return speakers


def _format_segment(segment: ConversationSegment) -> str:
    return (
        f"[{segment.start_time:7.2f}s] {segment.speaker} ({segment.topic}, "
        f"{segment.confidence:.0%}): {segment.text}"
    )


def _session_store(cfg: Config) -> JsonSessionStore:
    return JsonSessionStore(cfg.coordinator.session_dir)


async def _replay(
    coordinator: PipelineCoordinator,
    events: list[AudioEvent],
    speed: float,
) -> None:
    """Feed events to the pipeline, pacing them by their timestamps."""
    await coordinator.start()
    previous = events[0].timestamp if events else 0.0
    for event in events:
        if speed > 0 and event.timestamp > previous:
            await asyncio.sleep((event.timestamp - previous) / speed)
        previous = event.timestamp
        await coordinator.handle(event)
    await coordinator.handle(StopRequest())


@app.command()
def run(
    speaker: list[str] = typer.Option(
        ..., "--speaker", "-s", help="Speaker stream as KEY=path.wav (repeatable)"
    ),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose logging"
    ),
    speed: float = typer.Option(
        1.0, "--speed", help="Replay speed multiplier (0 replays without pauses)"
    ),
    event_seconds: float = typer.Option(
        0.1, "--event-seconds", help="Length of each replayed audio event"
    ),
    session_id: str | None = typer.Option(
        None, "--session-id", help="Session id used when saving"
    ),
    save: bool = typer.Option(
        True, "--save/--no-save", help="Persist the session when finished"
    ),
) -> None:
    """Replay WAV files through the transcription pipeline."""
    _setup_logging(verbose)
    try:
        if speed < 0:
            raise ConfigError("--speed must be non-negative")
        if event_seconds <= 0:
            raise ConfigError("--event-seconds must be positive")

        cfg = load_config(config, allow_missing=True)
        _apply_general_config(cfg, verbose)
        logger.info("Loaded config from: %s", config or "default locations")
        cfg.validate(require_credentials=False)
        if not cfg.api_key:
            logger.warning("No API key configured; audio will buffer but not be transcribed")

        speaker_files = _parse_speaker_files(speaker)
        streams = {
            key: list(
                wav_events(
                    key,
                    path,
                    event_seconds=event_seconds,
                    silence_threshold=cfg.chunking.silence_threshold,
                )
            )
            for key, path in speaker_files.items()
        }
        events = interleave(streams)
        logger.info("Replaying %d events from %d speaker(s)", len(events), len(streams))

        def on_segment(segment: ConversationSegment, merged: bool) -> None:
            prefix = "  +" if merged else "  "
            typer.echo(f"{prefix}{_format_segment(segment)}")

        def on_error(notice: ErrorNotice) -> None:
            typer.echo(f"  ! {notice.kind.value}: {notice.message}", err=True)

        coordinator = PipelineCoordinator(
            create_transcriber(cfg),
            cfg,
            session_id=session_id,
            on_segment=on_segment,
            on_error=on_error,
        )
        asyncio.run(_replay(coordinator, events, speed))

        status = coordinator.status()
        typer.echo(
            f"Session {coordinator.session_id}: {status.segment_count} segment(s), "
            f"est. cost ${status.session_cost_usd:.4f}"
        )
        if save:
            path = _session_store(cfg).save(coordinator.session_id, coordinator.dehydrate())
            typer.echo(f"Saved session to {path}")

    except (ConfigError, ValueError, RuntimeError) as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)
    except KeyboardInterrupt:
        logger.info("Replay interrupted by user")
        raise typer.Exit(0)


@app.command()
def show_session(
    session_id: str = typer.Argument(..., help="Stored session id"),
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
    json_output: bool = typer.Option(
        False, "--json", help="Output as JSON instead of text"
    ),
) -> None:
    """Print the conversation segments of a stored session."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config, allow_missing=True)
        _apply_general_config(cfg, verbose)
        record = _session_store(cfg).load(session_id)
    except (ConfigError, ValueError) as e:
        logger.error("Error loading session: %s", e)
        raise typer.Exit(1)

    if record is None:
        logger.error("Session not found: %s", session_id)
        raise typer.Exit(1)

    segments = [
        ConversationSegment.from_dict(data)
        for data in record.get("merger", {}).get("segments", [])
    ]
    accounting = record.get("accountant", {})
    total_seconds = float(accounting.get("total_seconds", 0.0))
    cost = (total_seconds / 60) * float(accounting.get("cost_per_minute", cfg.accounting.cost_per_minute))

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "session_id": record.get("session_id", session_id),
                    "segments": [segment.to_dict() for segment in segments],
                    "processed_seconds": total_seconds,
                    "estimated_cost_usd": cost,
                },
                indent=2,
            )
        )
        return

    typer.echo(f"Session {record.get('session_id', session_id)}")
    if not segments:
        typer.echo("  (no segments)")
    for segment in segments:
        typer.echo(f"  {_format_segment(segment)}")
    typer.echo(f"Processed {total_seconds:.1f}s, est. cost ${cost:.4f}")


@app.command()
def list_sessions(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """List stored session ids."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config, allow_missing=True)
        _apply_general_config(cfg, verbose)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)

    sessions = _session_store(cfg).list_sessions()
    if not sessions:
        logger.warning("No stored sessions found")
        return
    for session_id in sessions:
        typer.echo(session_id)


@app.command()
def check_config(
    config: Path | None = typer.Option(
        None, "--config", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    """Load and validate configuration."""
    _setup_logging(verbose)
    try:
        cfg = load_config(config)
        _apply_general_config(cfg, verbose)
        cfg.validate()
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        raise typer.Exit(1)

    chunking = cfg.chunking
    typer.echo("Configuration OK")
    typer.echo(f"  Engine: {cfg.engine.backend} (language={cfg.engine.language})")
    typer.echo(
        f"  Chunking: {chunking.min_chunk}s min, {chunking.high_activity_chunk}s busy, "
        f"{chunking.idle_chunk}s idle, {chunking.max_chunk}s max"
    )
    typer.echo(
        f"  Dispatcher: {cfg.dispatcher.concurrency} worker(s), "
        f"{cfg.dispatcher.max_attempts} attempt(s)"
    )
    typer.echo(f"  Sessions: {Path(cfg.coordinator.session_dir).expanduser()}")


if __name__ == "__main__":
    app()
