"""
Configuration loader for the memory pipeline.

Precedence, lowest to highest:
    built-in defaults < YAML file < PIPELINE_* environment variables

A .env file in the working directory is loaded (python-dotenv) before the
environment is read, without overriding variables that are already set.
"""

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple, Union

import yaml
from dotenv import load_dotenv

from .contracts.models import ChunkingConfig, ProviderType
from .core.exceptions import PipelineConfigError
from .pipeline.coordinator import CoordinatorConfig
from .pipeline.retry import RetryConfig
from .providers.base import ProviderSettings


logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "store": {
        "backend": "sqlite",
        "db_path": "local/state/pipeline.db",
        "sqlserver": {
            "host": "localhost",
            "port": 1433,
            "database": "Memories",
            "username": "sa",
            "schema": "pipeline",
            "driver": "ODBC Driver 18 for SQL Server",
            "trust_server_certificate": True,
        },
    },
    "coordinator": {
        "max_workers": 4,
        "lease_seconds": 300,
        "poll_interval_seconds": 1.0,
        "claim_batch_size": 8,
        "recovery_interval_seconds": 30.0,
    },
    "retry": {
        "max_attempts": 5,
        "initial_delay_ms": 1000,
        "max_delay_ms": 60000,
        "backoff_multiplier": 2.0,
        "jitter": True,
        "max_retry_after_ms": 300000,
    },
    "chunking": {
        "max_chunk_size": 2000,
        "overlap_size": 200,
    },
    "providers": {
        "openai": {"timeout_seconds": 30, "max_batch_size": 64, "max_concurrency": 4},
        "vllm": {"timeout_seconds": 60, "max_batch_size": 32, "max_concurrency": 4},
        "tei": {"timeout_seconds": 60, "max_batch_size": 32, "max_concurrency": 4},
    },
    "content": {
        "local_root": None,
        "http_timeout_seconds": 30,
    },
    "logging": {
        "level": "INFO",
        "structured": False,
        "include_timestamp": True,
    },
    "credentials": {
        "key_source": "env",
        "key_env_var": "PIPELINE_CREDENTIALS_KEY",
        "key_file_path": None,
    },
}


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# (environment variable, dotted config key, converter)
ENV_OVERRIDES: Tuple[Tuple[str, str, Callable[[str], Any]], ...] = (
    ("PIPELINE_DB_BACKEND", "store.backend", str),
    ("PIPELINE_DB_PATH", "store.db_path", str),
    ("PIPELINE_SQLSERVER_HOST", "store.sqlserver.host", str),
    ("PIPELINE_SQLSERVER_PORT", "store.sqlserver.port", int),
    ("PIPELINE_SQLSERVER_DATABASE", "store.sqlserver.database", str),
    ("PIPELINE_SQLSERVER_USER", "store.sqlserver.username", str),
    ("PIPELINE_SQLSERVER_SCHEMA", "store.sqlserver.schema", str),
    ("PIPELINE_SQLSERVER_DRIVER", "store.sqlserver.driver", str),
    ("PIPELINE_MAX_WORKERS", "coordinator.max_workers", int),
    ("PIPELINE_LEASE_SECONDS", "coordinator.lease_seconds", int),
    ("PIPELINE_POLL_INTERVAL_SECONDS", "coordinator.poll_interval_seconds", float),
    ("PIPELINE_CLAIM_BATCH_SIZE", "coordinator.claim_batch_size", int),
    ("PIPELINE_MAX_ATTEMPTS", "retry.max_attempts", int),
    ("PIPELINE_MAX_CHUNK_SIZE", "chunking.max_chunk_size", int),
    ("PIPELINE_OVERLAP_SIZE", "chunking.overlap_size", int),
    ("PIPELINE_CONTENT_ROOT", "content.local_root", str),
    ("PIPELINE_LOG_LEVEL", "logging.level", str),
    ("PIPELINE_LOG_STRUCTURED", "logging.structured", _parse_bool),
)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class StoreConfig:
    """Persistence backend selection and connection settings."""
    backend: str = "sqlite"
    db_path: str = "local/state/pipeline.db"
    connection_string: Optional[str] = None
    host: str = "localhost"
    port: int = 1433
    database: str = "Memories"
    username: str = "sa"
    password: Optional[str] = None
    schema: str = "pipeline"
    driver: str = "ODBC Driver 18 for SQL Server"
    trust_server_certificate: bool = True


@dataclass
class ContentConfig:
    local_root: Optional[str] = None
    http_timeout_seconds: float = 30.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    structured: bool = False
    include_timestamp: bool = True


@dataclass
class CredentialsConfig:
    """Where the credential encryption key comes from."""
    key_source: str = "env"
    key_env_var: str = "PIPELINE_CREDENTIALS_KEY"
    key_file_path: Optional[str] = None


class PipelineConfig:
    """
    Configuration for the memory pipeline.

    Example:
        >>> config = PipelineConfig(Path("config/pipeline.yaml"))
        >>> config.coordinator().max_workers
        4
        >>> config.get("store.backend")
        'sqlite'
    """

    def __init__(
        self,
        config_path: Optional[Union[str, Path]] = None,
        load_env_file: bool = True,
    ):
        """
        Initialize configuration.

        Args:
            config_path: Path to YAML config file (optional)
            load_env_file: Load a .env file before reading the environment

        Raises:
            PipelineConfigError: If the file is missing or not a YAML mapping
        """
        self.config_path = Path(config_path) if config_path else None
        if load_env_file:
            load_dotenv(override=False)

        loaded = self._load_config() if self.config_path else {}
        self.config = _deep_merge(DEFAULT_CONFIG, loaded)
        self._apply_env_overrides()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise PipelineConfigError(f"Config file not found: {self.config_path}")

        logger.info(f"Loading config from: {self.config_path}")
        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise PipelineConfigError(f"Invalid YAML in {self.config_path}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise PipelineConfigError(
                f"Config file {self.config_path} must contain a mapping at the top level"
            )
        return config

    def _apply_env_overrides(self) -> None:
        """Apply PIPELINE_* environment variable overrides."""
        for env_var, key, convert in ENV_OVERRIDES:
            raw = os.environ.get(env_var)
            if raw is None or raw == "":
                continue
            try:
                value = convert(raw)
            except ValueError as e:
                raise PipelineConfigError(f"Invalid value for {env_var}: {raw!r}") from e
            self._set(key, value)

    def _set(self, key: str, value: Any) -> None:
        keys = key.split(".")
        target = self.config
        for k in keys[:-1]:
            target = target.setdefault(k, {})
        target[keys[-1]] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key."""
        keys = key.split(".")
        value = self.config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default

        return value if value is not None else default

    def _section(self, name: str) -> Dict[str, Any]:
        section = self.config.get(name) or {}
        if not isinstance(section, dict):
            raise PipelineConfigError(f"Config section '{name}' must be a mapping")
        return section

    # =========================================================================
    # Typed sections
    # =========================================================================

    def store(self) -> StoreConfig:
        section = self._section("store")
        sqlserver = section.get("sqlserver") or {}
        backend = str(section.get("backend", "sqlite")).lower()
        if backend not in ("sqlite", "sqlserver"):
            raise PipelineConfigError(
                f"store.backend must be 'sqlite' or 'sqlserver', got '{backend}'"
            )
        try:
            return StoreConfig(
                backend=backend,
                db_path=str(section.get("db_path", StoreConfig.db_path)),
                connection_string=sqlserver.get("connection_string"),
                host=sqlserver.get("host", StoreConfig.host),
                port=int(sqlserver.get("port", StoreConfig.port)),
                database=sqlserver.get("database", StoreConfig.database),
                username=sqlserver.get("username", StoreConfig.username),
                password=sqlserver.get("password"),
                schema=sqlserver.get("schema", StoreConfig.schema),
                driver=sqlserver.get("driver", StoreConfig.driver),
                trust_server_certificate=bool(sqlserver.get("trust_server_certificate", True)),
            )
        except (TypeError, ValueError) as e:
            raise PipelineConfigError(f"Invalid store configuration: {e}") from e

    def chunking(self) -> ChunkingConfig:
        section = self._section("chunking")
        try:
            chunking = ChunkingConfig(
                max_chunk_size=int(section.get("max_chunk_size", ChunkingConfig.max_chunk_size)),
                overlap_size=int(section.get("overlap_size", ChunkingConfig.overlap_size)),
            )
        except (TypeError, ValueError) as e:
            raise PipelineConfigError(f"Invalid chunking configuration: {e}") from e
        status = chunking.validate()
        if not status.is_ok:
            raise PipelineConfigError(f"Invalid chunking configuration: {status.message}")
        return chunking

    def retry(self) -> RetryConfig:
        try:
            retry = RetryConfig.from_dict(self._section("retry"))
        except (TypeError, ValueError) as e:
            raise PipelineConfigError(f"Invalid retry configuration: {e}") from e
        if retry.max_attempts < 1:
            raise PipelineConfigError("retry.max_attempts must be at least 1")
        if retry.initial_delay_ms < 0 or retry.max_delay_ms < 0:
            raise PipelineConfigError("retry delays must not be negative")
        if retry.backoff_multiplier < 1:
            raise PipelineConfigError("retry.backoff_multiplier must be at least 1")
        return retry

    def coordinator(self) -> CoordinatorConfig:
        section = self._section("coordinator")
        try:
            config = CoordinatorConfig.from_dict(section)
        except (TypeError, ValueError) as e:
            raise PipelineConfigError(f"Invalid coordinator configuration: {e}") from e
        if config.max_workers < 1:
            raise PipelineConfigError("coordinator.max_workers must be at least 1")
        if config.lease_seconds < 1:
            raise PipelineConfigError("coordinator.lease_seconds must be at least 1")
        if config.claim_batch_size < 1:
            raise PipelineConfigError("coordinator.claim_batch_size must be at least 1")
        if config.poll_interval_seconds <= 0:
            raise PipelineConfigError("coordinator.poll_interval_seconds must be positive")
        config.chunking = self.chunking()
        config.retry = self.retry()
        return config

    def provider_settings(self) -> Dict[ProviderType, ProviderSettings]:
        """Settings per provider type; unknown provider names are rejected."""
        settings: Dict[ProviderType, ProviderSettings] = {}
        for name, values in self._section("providers").items():
            try:
                provider_type = ProviderType(str(name).upper())
            except ValueError as e:
                raise PipelineConfigError(f"Unknown provider type in config: '{name}'") from e
            try:
                parsed = ProviderSettings.from_dict(values or {})
            except (TypeError, ValueError) as e:
                raise PipelineConfigError(f"Invalid settings for provider '{name}': {e}") from e
            if parsed.timeout_seconds <= 0 or parsed.max_batch_size < 1 or parsed.max_concurrency < 1:
                raise PipelineConfigError(
                    f"Provider '{name}' needs a positive timeout, batch size and concurrency"
                )
            settings[provider_type] = parsed
        for provider_type in ProviderType:
            settings.setdefault(provider_type, ProviderSettings())
        return settings

    def content(self) -> ContentConfig:
        section = self._section("content")
        try:
            return ContentConfig(
                local_root=section.get("local_root"),
                http_timeout_seconds=float(section.get("http_timeout_seconds", 30.0)),
            )
        except (TypeError, ValueError) as e:
            raise PipelineConfigError(f"Invalid content configuration: {e}") from e

    def logging_config(self) -> LoggingConfig:
        section = self._section("logging")
        return LoggingConfig(
            level=str(section.get("level", "INFO")).upper(),
            structured=bool(section.get("structured", False)),
            include_timestamp=bool(section.get("include_timestamp", True)),
        )

    def credentials(self) -> CredentialsConfig:
        section = self._section("credentials")
        key_source = section.get("key_source", "env")
        if key_source not in ("env", "file"):
            raise PipelineConfigError(
                f"credentials.key_source must be 'env' or 'file', got '{key_source}'"
            )
        return CredentialsConfig(
            key_source=key_source,
            key_env_var=section.get("key_env_var", CredentialsConfig.key_env_var),
            key_file_path=section.get("key_file_path"),
        )
