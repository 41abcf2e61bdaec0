"""Configuration loader for rulebook.

Loads from the packaged configs/default.toml (or an explicit path) and overrides
with environment variables of the form RULEBOOK_<SECTION>_<KEY>.
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from rulebook.core.errors import ConfigError

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "configs" / "default.toml"
ENV_PREFIX = "RULEBOOK_"


@dataclass
class StorageConfig:
    playbook_path: str = "~/.rulebook/playbook.json"
    blocked_log_path: str = "~/.rulebook/blocked.jsonl"
    decision_log_path: str = "~/.rulebook/decisions.jsonl"
    embedding_cache_path: str = "~/.rulebook/embeddings.json"
    lock_retries: int = 20
    lock_backoff_seconds: float = 0.05


@dataclass
class ScoringConfig:
    decay_half_life_days: float = 90.0
    harmful_multiplier: float = 4.0
    min_feedback_for_active: int = 3
    min_helpful_for_proven: int = 10
    max_harmful_ratio_for_proven: float = 0.1
    prune_harmful_threshold: int = 3


@dataclass
class CurationConfig:
    dedup_similarity_threshold: float = 0.85
    stale_days: int = 90
    lexical_conflicts: bool = True


@dataclass
class EmbeddingsConfig:
    model: str = "sentence-transformers/all-MiniLM-L6-v2"
    batch_size: int = 32


@dataclass
class ReflectorConfig:
    max_iterations: int = 3
    max_deltas: int = 50
    time_budget_seconds: float = 120.0
    max_retries: int = 3
    temperature: float = 0.3


@dataclass
class GateConfig:
    enabled: bool = True
    search_limit: int = 20
    lookback_days: int = 90
    min_successes: int = 5
    min_failures: int = 3
    accept_ratio: float = 0.9
    reject_ratio: float = 0.8
    min_content_length: int = 15


@dataclass
class HistoryConfig:
    cass_path: str = "cass"
    timeout_seconds: float = 10.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "json"


@dataclass
class MCPConfig:
    transport: str = "stdio"
    port: int = 8000


@dataclass
class LLMConfig:
    provider: str = "mock"
    model: str = "anthropic/claude-3.5-sonnet"
    temperature: float = 0.3
    max_tokens: int = 4000


@dataclass
class RulebookConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    curation: CurationConfig = field(default_factory=CurationConfig)
    embeddings: EmbeddingsConfig = field(default_factory=EmbeddingsConfig)
    reflector: ReflectorConfig = field(default_factory=ReflectorConfig)
    gate: GateConfig = field(default_factory=GateConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    mcp: MCPConfig = field(default_factory=MCPConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)


def _coerce(raw: Any, default: Any, name: str) -> Any:
    """Coerce a TOML or env value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("true", "1", "yes", "on")
    try:
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    return str(raw)


def _build_section(cls: type, section_name: str, values: dict[str, Any]) -> Any:
    kwargs = {}
    default_obj = cls()
    for f in fields(cls):
        default = getattr(default_obj, f.name)
        raw = values.get(f.name, default)
        env_key = f"{ENV_PREFIX}{section_name.upper()}_{f.name.upper()}"
        raw = os.getenv(env_key, raw)
        kwargs[f.name] = _coerce(raw, default, f"{section_name}.{f.name}")
    unknown = set(values) - {f.name for f in fields(cls)}
    if unknown:
        raise ConfigError(f"Unknown keys in [{section_name}]: {sorted(unknown)}")
    return cls(**kwargs)


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ConfigError(f"{name} must be in [0.0, 1.0], got {value}")


def _validate_config(config: RulebookConfig) -> None:
    """Validate configuration values.

    Args:
        config: RulebookConfig to validate

    Raises:
        ConfigError: If validation fails (a ValueError subclass)
    """
    s = config.scoring
    if s.decay_half_life_days <= 0:
        raise ConfigError(f"scoring.decay_half_life_days must be > 0, got {s.decay_half_life_days}")
    if s.harmful_multiplier < 0:
        raise ConfigError(f"scoring.harmful_multiplier must be >= 0, got {s.harmful_multiplier}")
    if s.min_feedback_for_active < 1:
        val = s.min_feedback_for_active
        raise ConfigError(f"scoring.min_feedback_for_active must be >= 1, got {val}")
    if s.min_helpful_for_proven < 1:
        val = s.min_helpful_for_proven
        raise ConfigError(f"scoring.min_helpful_for_proven must be >= 1, got {val}")
    _check_unit("scoring.max_harmful_ratio_for_proven", s.max_harmful_ratio_for_proven)
    if s.prune_harmful_threshold < 0:
        val = s.prune_harmful_threshold
        raise ConfigError(f"scoring.prune_harmful_threshold must be >= 0, got {val}")

    _check_unit("curation.dedup_similarity_threshold", config.curation.dedup_similarity_threshold)
    if config.curation.stale_days < 1:
        raise ConfigError(f"curation.stale_days must be >= 1, got {config.curation.stale_days}")

    r = config.reflector
    if r.max_iterations < 1:
        raise ConfigError(f"reflector.max_iterations must be >= 1, got {r.max_iterations}")
    if r.max_deltas < 1:
        raise ConfigError(f"reflector.max_deltas must be >= 1, got {r.max_deltas}")
    if r.time_budget_seconds <= 0:
        raise ConfigError(f"reflector.time_budget_seconds must be > 0, got {r.time_budget_seconds}")

    g = config.gate
    _check_unit("gate.accept_ratio", g.accept_ratio)
    _check_unit("gate.reject_ratio", g.reject_ratio)
    if g.search_limit < 1:
        raise ConfigError(f"gate.search_limit must be >= 1, got {g.search_limit}")

    if config.storage.lock_retries < 1:
        raise ConfigError(f"storage.lock_retries must be >= 1, got {config.storage.lock_retries}")

    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if config.logging.level.upper() not in valid_levels:
        raise ConfigError(f"logging.level must be one of {valid_levels}, got {config.logging.level}")
    valid_formats = {"json", "text"}
    if config.logging.format not in valid_formats:
        msg = f"logging.format must be one of {valid_formats}, got {config.logging.format}"
        raise ConfigError(msg)

    valid_transports = {"stdio", "http", "sse"}
    if config.mcp.transport not in valid_transports:
        msg = f"mcp.transport must be one of {valid_transports}, got {config.mcp.transport}"
        raise ConfigError(msg)
    if config.mcp.port < 1 or config.mcp.port > 65535:
        raise ConfigError(f"mcp.port must be in [1, 65535], got {config.mcp.port}")

    if config.llm.temperature < 0.0 or config.llm.temperature > 2.0:
        raise ConfigError(f"llm.temperature must be in [0.0, 2.0], got {config.llm.temperature}")
    if config.llm.max_tokens < 1:
        raise ConfigError(f"llm.max_tokens must be >= 1, got {config.llm.max_tokens}")


_SECTIONS = {f.name: f for f in fields(RulebookConfig)}


def load_config(config_path: Path | None = None) -> RulebookConfig:
    """Load configuration from TOML file and override with env vars.

    Args:
        config_path: Path to TOML config file. Defaults to the packaged
            configs/default.toml, or $RULEBOOK_CONFIG when set.

    Returns:
        RulebookConfig instance with merged configuration

    Raises:
        ConfigError: If the file has unknown sections or validation fails
    """
    if config_path is None:
        env_path = os.getenv(f"{ENV_PREFIX}CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    with open(config_path, "rb") as f:
        config_dict = tomllib.load(f)

    unknown = set(config_dict) - set(_SECTIONS)
    if unknown:
        raise ConfigError(f"Unknown config sections: {sorted(unknown)}")

    sections = {}
    for name, f in _SECTIONS.items():
        section_cls = f.default_factory  # type: ignore[misc]
        sections[name] = _build_section(section_cls, name, config_dict.get(name, {}))

    config = RulebookConfig(**sections)
    _validate_config(config)
    return config


def resolve_path(path: str) -> Path:
    """Expand ~ and environment variables in a configured path."""
    return Path(os.path.expandvars(path)).expanduser()
