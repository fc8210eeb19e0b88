"""
Configuration module for the history purge engine.

Provides centralized configuration management for the purge engine, the
chunk driver and the nightly maintenance job.
"""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field, field_validator


class LogLevel(str, Enum):
    """Supported logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class PurgeConfig(BaseModel):
    """Central configuration for the history purge engine.

    Every value the engine needs is carried on this object and handed to the
    engine when it is constructed. Nothing is looked up from ambient state
    while a pass is running.

    Configuration Sources (in order of precedence):
        1. Explicit invocation parameters (highest priority)
        2. Programmatic settings
        3. Environment variables (RXPURGE_ prefix)
        4. Configuration files (.json, .yaml)
        5. Default values (lowest priority)

    Example:
        >>> config = PurgeConfig(
        ...     database_url="postgresql://purge@db/pharmacy",
        ...     retention_days=730,
        ...     block_size=50000,
        ... )

        Loading from environment:

        >>> import os
        >>> os.environ['RXPURGE_RETENTION_DAYS'] = '730'
        >>> config = PurgeConfig.from_env()

    Note:
        The block size is the only throughput lever. Large blocks make each
        transaction (and the write-ahead log growth between backups) larger.
    """

    # General settings
    database_url: str = Field(
        "sqlite:///rx_purge.db", description="SQLAlchemy database connection string"
    )
    purge_enabled: bool = Field(True, description="Enable the history purge step")
    log_level: LogLevel = Field(LogLevel.INFO, description="Logging level")
    event_log_to_database: bool = Field(
        True, description="Persist begin/end/error events to the event log tables"
    )

    # Retention settings
    retention_days: int = Field(
        36500, description="Purge roots moved to history more than this many days ago", gt=0
    )
    retention_from_sys_property: bool = Field(
        False, description="Read the retention period from the sys_property table"
    )

    # Bounded work settings
    block_size: int = Field(100000, description="Maximum rows per block delete", gt=0)
    max_to_delete: int = Field(
        25000000, description="Maximum root rows deleted per invocation", gt=0
    )

    # Chunk driver settings
    chunk_days: int = Field(7, description="Days per driver sub-range", ge=1)
    max_execs_per_chunk: int = Field(
        1000, description="Safety guard on passes per driver sub-range", gt=0
    )
    inter_chunk_pause_seconds: float = Field(
        0.0, description="Pause between driver sub-ranges", ge=0
    )

    # Reclamation settings
    max_group_depth: int = Field(
        16, description="Maximum parent-group levels walked per pass", gt=0
    )
    reclaim_prescribers: bool = Field(
        True, description="Delete prescribers no longer referenced by any order"
    )
    reference_check_chunk_size: int = Field(
        500, description="Identifiers per IN-list in reference checks", gt=0, le=5000
    )

    @field_validator("block_size")
    @classmethod
    def validate_block_size(cls, v: int) -> int:
        """Keep single transactions within reasonable bounds."""
        if v > 1000000:
            raise ValueError(
                "block_size above 1,000,000 rows defeats bounded transactions"
            )
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump(mode="json")

    @classmethod
    def from_env(cls, prefix: str = "RXPURGE_") -> "PurgeConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            env_var = f"{prefix}{field_name.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]

                field_type = field_info.annotation

                # Handle Optional types
                if get_origin(field_type) is Union:
                    args = get_args(field_type)
                    field_type = next(
                        (arg for arg in args if arg is not type(None)), str
                    )

                try:
                    if field_type == bool:
                        config_dict[field_name] = value.lower() in (
                            "true",
                            "1",
                            "yes",
                            "on",
                        )
                    elif field_type == int:
                        config_dict[field_name] = int(value)
                    elif field_type == float:
                        config_dict[field_name] = float(value)
                    elif isinstance(field_type, type) and issubclass(field_type, Enum):
                        config_dict[field_name] = field_type(value.upper())
                    else:
                        config_dict[field_name] = value
                except (ValueError, TypeError):
                    # Let pydantic report the bad value
                    config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PurgeConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to a .json, .yaml or .yml file

        Returns:
            Configuration instance

        Raises:
            ValueError: Unsupported file extension
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")

        if path.suffix.lower() == ".json":
            data = json.loads(text)
        elif path.suffix.lower() in (".yaml", ".yml"):
            import yaml  # type: ignore[import-untyped]

            data = yaml.safe_load(text) or {}
        else:
            raise ValueError(f"Unsupported configuration file type: {path.suffix}")

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[PurgeConfig] = None


def get_config() -> PurgeConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = PurgeConfig.from_env()

    return _config


def set_config(config: PurgeConfig) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> PurgeConfig:
    """
    Configure the purge engine with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = PurgeConfig(**kwargs)
    else:
        config_dict = _config.model_dump()
        config_dict.update(kwargs)
        _config = PurgeConfig(**config_dict)

    return _config
