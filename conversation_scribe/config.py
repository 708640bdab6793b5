"""Configuration loader and validation."""

import logging
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "BufferConfig",
    "ChunkingConfig",
    "DispatcherConfig",
    "MergerConfig",
    "AccountingConfig",
    "CoordinatorConfig",
    "EngineConfig",
    "DeepgramConfig",
    "OpenAIConfig",
    "GeneralConfig",
    "Config",
    "ConfigError",
    "load_config",
]

_SECTIONS = (
    "buffer",
    "chunking",
    "dispatcher",
    "merger",
    "accounting",
    "coordinator",
    "engine",
    "deepgram",
    "openai",
    "speakers",
    "general",
)

VALID_BACKENDS = ("openai", "deepgram")


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass
class BufferConfig:
    """Per-speaker audio buffering."""

    sample_rate: int = 16000
    max_buffer_seconds: float = 60.0


@dataclass
class ChunkingConfig:
    """Chunk boundary decisions."""

    activity_window: float = 5.0
    high_activity_chunk: float = 1.5
    idle_chunk: float = 5.0
    min_chunk: float = 0.5
    max_chunk: float = 20.0
    silence_timeout: float = 1.5
    silence_threshold: float = 0.001


@dataclass
class DispatcherConfig:
    """Transcription dispatch: concurrency, pacing and retries."""

    concurrency: int = 3
    min_request_interval: float = 0.1
    max_attempts: int = 3
    base_delay: float = 0.3
    request_timeout: float = 30.0
    min_audio_seconds: float = 0.1
    max_audio_seconds: float = 600.0
    max_payload_mb: float = 24.0
    admission_retry_delay: float = 0.25
    shutdown_grace: float = 10.0


@dataclass
class MergerConfig:
    """Fragment stitching and cleanup."""

    merge_window: float = 2.0
    lookback: int = 10
    clean_text: bool = True


@dataclass
class AccountingConfig:
    """API cost estimation."""

    cost_per_minute: float = 0.006


@dataclass
class CoordinatorConfig:
    """Pipeline sweep and eviction."""

    sweep_interval: float = 1.5
    eviction_window: float = 30.0
    session_dir: str = "~/.local/share/conversation-scribe/sessions"


@dataclass
class EngineConfig:
    """Transcription engine selection."""

    backend: str = "openai"
    language: str = "en"


@dataclass
class DeepgramConfig:
    """Deepgram API configuration (for deepgram backend)."""

    api_key: str | None = None
    model: str = "nova-3"
    smart_format: bool = True
    punctuate: bool = True


@dataclass
class OpenAIConfig:
    """OpenAI Whisper API configuration (for openai backend)."""

    api_key: str | None = None
    model: str = "whisper-1"
    base_url: str = "https://api.openai.com/v1"


@dataclass
class GeneralConfig:
    """General application settings."""

    verbose: bool = False


@dataclass
class Config:
    """Main configuration container."""

    buffer: BufferConfig = field(default_factory=BufferConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    merger: MergerConfig = field(default_factory=MergerConfig)
    accounting: AccountingConfig = field(default_factory=AccountingConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    deepgram: DeepgramConfig = field(default_factory=DeepgramConfig)
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    speakers: dict[str, str] = field(default_factory=dict)
    general: GeneralConfig = field(default_factory=GeneralConfig)

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
        allow_missing: bool = False,
    ) -> "Config":
        """Load configuration from TOML file with environment overrides.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. SCRIBE_CONFIG env var
                  2. ./scribe.toml
                  3. ~/.config/scribe.toml
            env: Environment variables for overrides (defaults to os.environ)
            allow_missing: Fall back to defaults when no file is found

        Returns:
            Loaded Config instance

        Raises:
            ConfigError: If config file not found or values are invalid
        """
        if env is None:
            import os

            env = os.environ

        try:
            resolved_path = _resolve_config_path(path, env)
        except ConfigError:
            if not allow_missing or path is not None:
                raise
            logger.info("No config file found, using defaults")
            raw_data = {}
        else:
            raw_data = _load_toml_file(resolved_path)

        try:
            coerced = _coerce_config_values(raw_data, env)
            return cls(
                buffer=BufferConfig(**coerced["buffer"]),
                chunking=ChunkingConfig(**coerced["chunking"]),
                dispatcher=DispatcherConfig(**coerced["dispatcher"]),
                merger=MergerConfig(**coerced["merger"]),
                accounting=AccountingConfig(**coerced["accounting"]),
                coordinator=CoordinatorConfig(**coerced["coordinator"]),
                engine=EngineConfig(**coerced["engine"]),
                deepgram=DeepgramConfig(**coerced["deepgram"]),
                openai=OpenAIConfig(**coerced["openai"]),
                speakers=dict(coerced["speakers"]),
                general=GeneralConfig(**coerced["general"]),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    @property
    def api_key(self) -> str | None:
        """Credential for the selected backend."""
        if self.engine.backend == "deepgram":
            return self.deepgram.api_key
        return self.openai.api_key

    def validate(self, *, require_credentials: bool = True) -> None:
        """Validate configuration values.

        Args:
            require_credentials: Treat a missing API key as an error

        Raises:
            ConfigError: If any section holds an invalid value
        """
        validate_engine_config(self.engine)
        validate_chunking_config(self.chunking)
        validate_dispatcher_config(self.dispatcher)
        validate_merger_config(self.merger)

        if self.buffer.sample_rate <= 0:
            raise ConfigError(f"buffer.sample_rate must be positive, got {self.buffer.sample_rate}")
        if self.buffer.max_buffer_seconds < self.chunking.max_chunk:
            raise ConfigError(
                "buffer.max_buffer_seconds must be at least chunking.max_chunk "
                f"({self.buffer.max_buffer_seconds} < {self.chunking.max_chunk})"
            )
        if self.accounting.cost_per_minute < 0:
            raise ConfigError("accounting.cost_per_minute must be non-negative")
        if self.coordinator.sweep_interval <= 0:
            raise ConfigError("coordinator.sweep_interval must be positive")
        if self.coordinator.eviction_window <= self.chunking.silence_timeout:
            raise ConfigError("coordinator.eviction_window must exceed chunking.silence_timeout")

        if require_credentials and not self.api_key:
            env_name = "DEEPGRAM_API_KEY" if self.engine.backend == "deepgram" else "OPENAI_API_KEY"
            raise ConfigError(
                f"API key is required for backend '{self.engine.backend}'. "
                f"Set it in the config file or via the {env_name} environment variable."
            )


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path:
    """Resolve configuration file path following search order.

    Raises:
        ConfigError: If no config file found in any location
    """
    candidates = []

    if cli_path:
        cli_path = Path(cli_path)
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get("SCRIBE_CONFIG"):
        candidates.append(Path(env_path))

    candidates.append(Path("scribe.toml"))
    candidates.append(Path.home() / ".config" / "scribe.toml")

    for candidate in candidates:
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    raise ConfigError(
        f"Config file not found. Searched: {', '.join(str(c) for c in candidates)}"
    )


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict, env: Mapping[str, str]) -> dict:
    """Normalize raw TOML data for dataclass instantiation.

    Args:
        raw_data: Raw parsed TOML dictionary
        env: Environment variables for credential fallback

    Returns:
        Dictionary with one table per known section
    """
    unknown = set(raw_data) - set(_SECTIONS)
    if unknown:
        logger.warning("Ignoring unknown config sections: %s", ", ".join(sorted(unknown)))

    coerced = {}
    for section in _SECTIONS:
        table = raw_data.get(section, {})
        if not isinstance(table, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        coerced[section] = dict(table)

    for key, name in coerced["speakers"].items():
        if not isinstance(name, str) or not name:
            raise ConfigError(f"speakers.{key} must be a non-empty string")

    if not coerced["deepgram"].get("api_key"):
        coerced["deepgram"]["api_key"] = env.get("DEEPGRAM_API_KEY")
    if not coerced["openai"].get("api_key"):
        coerced["openai"]["api_key"] = env.get("OPENAI_API_KEY")

    return coerced


def validate_engine_config(engine_cfg: EngineConfig) -> None:
    """Validate engine selection.

    Raises:
        ConfigError: If the backend is unknown
    """
    if engine_cfg.backend not in VALID_BACKENDS:
        raise ConfigError(
            f"Invalid backend '{engine_cfg.backend}'. "
            f"Must be one of: {', '.join(VALID_BACKENDS)}"
        )
    if not engine_cfg.language:
        raise ConfigError("engine.language must not be empty")


def validate_chunking_config(chunk_cfg: ChunkingConfig) -> None:
    """Validate chunk boundary thresholds.

    Raises:
        ConfigError: If thresholds are non-positive or out of order
    """
    for name in ("activity_window", "high_activity_chunk", "idle_chunk", "min_chunk", "max_chunk", "silence_timeout"):
        value = getattr(chunk_cfg, name)
        if value <= 0:
            raise ConfigError(f"chunking.{name} must be positive, got {value}")

    if not chunk_cfg.min_chunk <= chunk_cfg.high_activity_chunk <= chunk_cfg.idle_chunk <= chunk_cfg.max_chunk:
        raise ConfigError(
            "chunking thresholds must satisfy min_chunk <= high_activity_chunk "
            "<= idle_chunk <= max_chunk"
        )

    if not 0 <= chunk_cfg.silence_threshold < 1:
        raise ConfigError(
            f"chunking.silence_threshold must be in [0, 1), got {chunk_cfg.silence_threshold}"
        )


def validate_dispatcher_config(dispatch_cfg: DispatcherConfig) -> None:
    """Validate dispatcher limits.

    Raises:
        ConfigError: If limits are invalid
    """
    if dispatch_cfg.concurrency <= 0:
        raise ConfigError(f"dispatcher.concurrency must be positive, got {dispatch_cfg.concurrency}")
    if dispatch_cfg.max_attempts <= 0:
        raise ConfigError(f"dispatcher.max_attempts must be positive, got {dispatch_cfg.max_attempts}")
    if dispatch_cfg.min_request_interval < 0:
        raise ConfigError("dispatcher.min_request_interval must be non-negative")
    if dispatch_cfg.base_delay <= 0:
        raise ConfigError("dispatcher.base_delay must be positive")
    if dispatch_cfg.request_timeout <= 0:
        raise ConfigError(f"dispatcher.request_timeout must be positive, got {dispatch_cfg.request_timeout}")
    if dispatch_cfg.max_payload_mb <= 0:
        raise ConfigError("dispatcher.max_payload_mb must be positive")


def validate_merger_config(merger_cfg: MergerConfig) -> None:
    """Validate merge window and lookback.

    Raises:
        ConfigError: If values are invalid
    """
    if merger_cfg.merge_window < 0:
        raise ConfigError(f"merger.merge_window must be non-negative, got {merger_cfg.merge_window}")
    if merger_cfg.lookback <= 0:
        raise ConfigError(f"merger.lookback must be positive, got {merger_cfg.lookback}")


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    allow_missing: bool = False,
) -> Config:
    """Load configuration from TOML file.

    Convenience wrapper around Config.from_toml().
    """
    return Config.from_toml(path, env=env, allow_missing=allow_missing)
