"""Configuration loader for the topic metadata pipeline.

Loads configuration from:
1. Default values (hardcoded)
2. config.yaml file (if exists)
3. Environment variables (highest priority)

Environment variables use the pattern: TMG_SECTION__KEY
Examples:
    TMG_BATCH__WINDOW_SIZE=500
    TMG_BATCH__CHUNK_SIZES=100,10,1
    TMG_LLM__PROVIDER=anthropic
    TMG_LOGGING__LEVEL=DEBUG

Credentials are read from the environment (or a .env file):
    SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, OPENAI_API_KEY, ANTHROPIC_API_KEY
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError, MissingConfigError
from .logging_config import get_logger

logger = get_logger('config')

ENV_PREFIX = "TMG_"
SUPPORTED_BACKENDS = ("supabase", "sqlite")
SUPPORTED_PROVIDERS = ("openai", "anthropic")
DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
}


@dataclass
class StoreConfig:
    """Destination store configuration."""
    backend: str = "supabase"
    sqlite_path: str = "data/topic_metadata.db"
    topics_table: str = "topics_with_context"
    metadata_table: str = "topic_ai_metadata"
    page_size: int = 1000
    timeout_seconds: float = 30.0
    spec_version: str = "v1"


@dataclass
class EmbeddingConfig:
    """Embedding API configuration."""
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 100
    max_concurrency: int = 5
    timeout_seconds: float = 60.0


@dataclass
class LLMConfig:
    """Completion API configuration for topic summaries."""
    provider: str = "openai"
    model: Optional[str] = None
    max_tokens: int = 400
    temperature: float = 0.3
    max_concurrency: int = 5
    timeout_seconds: float = 60.0

    @property
    def model_name(self) -> str:
        """Configured model, or the default for the provider."""
        return self.model or DEFAULT_MODELS.get(self.provider, DEFAULT_MODELS["openai"])


@dataclass
class BatchConfig:
    """Windowing, persistence cascade and run-guard configuration."""
    window_size: int = 2000
    chunk_sizes: list[int] = field(default_factory=lambda: [200, 5, 1])
    confirm_threshold: int = 1000
    confirm_delay_seconds: float = 5.0
    pilot_limit: int = 200
    pilot_board: str = "AQA"
    pilot_subject: str = "Biology"


@dataclass
class RetryConfig:
    """Backoff schedule shared by API calls and store writes."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = "data/logs/topic_metadata.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    json_format: bool = False


@dataclass
class Config:
    """Main configuration container."""
    store: StoreConfig = field(default_factory=StoreConfig)
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Credentials (loaded from environment)
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    def validate(self, dry_run: bool = False) -> None:
        """Check settings and credentials before any API call is made.

        Dry runs only read from the store, so API keys are not required.

        Raises:
            ConfigurationError: On an invalid setting
            MissingConfigError: When a required credential is absent
        """
        if self.store.backend not in SUPPORTED_BACKENDS:
            raise ConfigurationError(
                f"Unknown store backend '{self.store.backend}' (expected one of {SUPPORTED_BACKENDS})",
                config_key='store.backend',
            )
        if self.llm.provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unknown LLM provider '{self.llm.provider}' (expected one of {SUPPORTED_PROVIDERS})",
                config_key='llm.provider',
            )
        if self.llm.model and self.llm.model.startswith("claude") != (self.llm.provider == "anthropic"):
            raise ConfigurationError(
                f"Model '{self.llm.model}' does not belong to provider '{self.llm.provider}'",
                config_key='llm.model',
            )

        for key, value in (
            ('store.page_size', self.store.page_size),
            ('embeddings.batch_size', self.embeddings.batch_size),
            ('embeddings.dimensions', self.embeddings.dimensions),
            ('embeddings.max_concurrency', self.embeddings.max_concurrency),
            ('llm.max_concurrency', self.llm.max_concurrency),
            ('batch.window_size', self.batch.window_size),
            ('retry.max_attempts', self.retry.max_attempts),
        ):
            if value < 1:
                raise ConfigurationError(f"'{key}' must be >= 1, got {value}", config_key=key)

        validate_chunk_sizes(self.batch.chunk_sizes)

        if self.store.backend == "supabase":
            if not self.supabase_url:
                raise MissingConfigError('SUPABASE_URL')
            if not self.supabase_key:
                raise MissingConfigError('SUPABASE_SERVICE_ROLE_KEY')

        if dry_run:
            return

        if not self.openai_api_key:
            raise MissingConfigError('OPENAI_API_KEY')
        if self.llm.provider == "anthropic" and not self.anthropic_api_key:
            raise MissingConfigError('ANTHROPIC_API_KEY')


def validate_chunk_sizes(chunk_sizes: list[int]) -> None:
    """Cascade sizes must be strictly decreasing and end with single-record writes."""
    if not chunk_sizes:
        raise ConfigurationError("'batch.chunk_sizes' must not be empty", config_key='batch.chunk_sizes')
    if chunk_sizes[-1] != 1:
        raise ConfigurationError(
            f"'batch.chunk_sizes' must end with 1, got {chunk_sizes}",
            config_key='batch.chunk_sizes',
        )
    for larger, smaller in zip(chunk_sizes, chunk_sizes[1:]):
        if smaller >= larger:
            raise ConfigurationError(
                f"'batch.chunk_sizes' must be strictly decreasing, got {chunk_sizes}",
                config_key='batch.chunk_sizes',
            )


SECTIONS = {
    'store': StoreConfig,
    'embeddings': EmbeddingConfig,
    'llm': LLMConfig,
    'batch': BatchConfig,
    'retry': RetryConfig,
    'logging': LoggingConfig,
}


def _deep_update(base: dict, updates: dict) -> dict:
    """Recursively update a dictionary."""
    for key, value in updates.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_update(base[key], value)
        else:
            base[key] = value
    return base


def _coerce(original, value: str):
    """Convert an environment string to the type of the default it replaces."""
    if isinstance(original, bool):
        return value.lower() in ('true', '1', 'yes')
    if isinstance(original, int):
        return int(value)
    if isinstance(original, float):
        return float(value)
    if isinstance(original, list):
        items = [item.strip() for item in value.split(',') if item.strip()]
        if original and all(isinstance(item, int) for item in original):
            return [int(item) for item in items]
        return items
    return value


def _apply_env_overrides(config_dict: dict) -> dict:
    """Apply environment variable overrides.

    Environment variables use the pattern: TMG_SECTION__KEY
    Double underscore separates nested keys.
    """
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue

        path = key[len(ENV_PREFIX):].lower().split("__")
        if len(path) < 2:
            continue

        current = config_dict
        for part in path[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        final_key = path[-1]
        try:
            if final_key in current:
                value = _coerce(current[final_key], value)
        except ValueError:
            raise ConfigurationError(
                f"Invalid value for {key}: '{value}'",
                config_key='.'.join(path),
            )

        current[final_key] = value
        logger.debug(f"Applied env override: {key}")

    # Compatibility knob for the first cascade level
    chunk_override = os.getenv('TOPIC_AI_UPSERT_CHUNK_SIZE')
    if chunk_override:
        sizes = list(config_dict['batch']['chunk_sizes'])
        try:
            sizes[0] = int(chunk_override)
        except ValueError:
            raise ConfigurationError(
                f"Invalid value for TOPIC_AI_UPSERT_CHUNK_SIZE: '{chunk_override}'",
                config_key='batch.chunk_sizes',
            )
        config_dict['batch']['chunk_sizes'] = sizes

    return config_dict


def _dict_to_config(config_dict: dict) -> Config:
    """Convert a dictionary to Config dataclass, ignoring unknown keys."""
    sections = {}
    for name, section_cls in SECTIONS.items():
        known = section_cls.__dataclass_fields__
        values = config_dict.get(name) or {}
        unknown = set(values) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown '{name}' settings: {sorted(unknown)}")
        sections[name] = section_cls(**{k: v for k, v in values.items() if k in known})
    return Config(**sections)


def _defaults_dict() -> dict:
    defaults = Config()
    return {
        name: {f.name: getattr(getattr(defaults, name), f.name) for f in fields(section_cls)}
        for name, section_cls in SECTIONS.items()
    }


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from file and environment.

    Args:
        config_path: Path to config file. If None, searches for config.yaml
                    in the working directory and the project root.

    Returns:
        Config object with all settings loaded
    """
    load_dotenv()

    config_dict = _defaults_dict()

    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path(__file__).parent.parent / "config.yaml",
            Path(__file__).parent.parent / "config.yml",
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    if config_path:
        if not Path(config_path).exists():
            raise ConfigurationError(f"Config file not found: {config_path}", config_key='config_path')
        try:
            with open(config_path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}", config_key='config_path')
        config_dict = _deep_update(config_dict, file_config)
        logger.debug(f"Loaded config from: {config_path}")

    config_dict = _apply_env_overrides(config_dict)

    config = _dict_to_config(config_dict)

    config.supabase_url = os.getenv('SUPABASE_URL')
    config.supabase_key = os.getenv('SUPABASE_SERVICE_ROLE_KEY') or os.getenv('SUPABASE_KEY')
    config.openai_api_key = os.getenv('OPENAI_API_KEY')
    config.anthropic_api_key = os.getenv('ANTHROPIC_API_KEY')

    return config


# Global config instance (lazy loaded)
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads config on first call, returns cached instance on subsequent calls.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> Config:
    """Reload configuration, clearing the cache."""
    global _config
    _config = load_config(config_path)
    return _config
