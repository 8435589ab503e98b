"""Configuration management for CostGate."""

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for CostGate."""

    model_config = SettingsConfigDict(
        env_prefix="COSTGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Storage settings
    database_path: str = Field(
        default="costgate.db",
        description="Path to SQLite database file"
    )
    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy URL; overrides database_path (e.g. a PostgreSQL DSN)"
    )
    pricing_file_path: Optional[str] = Field(
        default=None,
        description="Path to static pricing JSON file (None = bundled pricing.json)"
    )
    budget_config_path: Optional[str] = Field(
        default=None,
        description="Path to a YAML file describing scopes, limits and alert thresholds"
    )

    # Cache settings
    spend_cache_ttl_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Refresh interval of the enforcement snapshot (limits and spend); "
        "the maximum staleness of spend recorded by other processes"
    )
    limit_cache_ttl_seconds: float = Field(
        default=60.0,
        ge=0,
        description="How long limits and alert configs are cached outside the enforcement path"
    )
    pricing_cache_ttl_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Refresh interval of the in-memory dynamic pricing snapshot"
    )

    # Enforcement settings
    enforcement_failure_policy: Literal["fail_open", "fail_closed"] = Field(
        default="fail_open",
        description="Gate behavior when spend data is unreachable or the check times out"
    )
    enforcement_timeout_ms: float = Field(
        default=50.0,
        gt=0,
        description="Upper bound on a single pre-flight check"
    )

    # Estimation settings
    default_output_ratio: float = Field(
        default=0.6,
        description="Ratio for predicting output units from input units"
    )
    output_safety_factor: float = Field(
        default=1.5,
        ge=1.0,
        description="Multiplier applied to the observed mean output size"
    )
    token_estimation_mode: Literal["tiktoken", "heuristic"] = Field(
        default="tiktoken",
        description="Token estimation mode: 'tiktoken' or 'heuristic'"
    )

    # Alerting settings
    default_warning_threshold: float = Field(
        default=75.0,
        description="Default warning threshold in percent of the limit"
    )
    default_critical_threshold: float = Field(
        default=90.0,
        description="Default critical threshold in percent of the limit"
    )
    renotify_cooldown_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Minimum gap between repeated 'exceeded' alerts"
    )

    # Event bus settings
    bus_shards: int = Field(default=4, ge=1, description="Number of ordered worker queues")
    bus_max_queue_size: int = Field(default=10_000, ge=0, description="0 = unbounded")
    bus_max_attempts: int = Field(default=3, ge=1, description="Delivery attempts per consumer")
    bus_backoff_min_seconds: float = Field(default=0.1, ge=0)
    bus_backoff_max_seconds: float = Field(default=5.0, ge=0)

    log_level: str = Field(default="INFO", description="Log level for CLI and server")

    def __init__(self, **kwargs):
        """Initialize settings with environment variable support."""
        super().__init__(**kwargs)

        # Expand ~ in database path
        if self.database_path.startswith("~"):
            self.database_path = str(Path(self.database_path).expanduser())

    @model_validator(mode="after")
    def _check_thresholds(self) -> "Settings":
        if not 0 < self.default_warning_threshold < self.default_critical_threshold <= 100:
            raise ValueError(
                "Thresholds must satisfy 0 < warning < critical <= 100, got "
                f"{self.default_warning_threshold}/{self.default_critical_threshold}"
            )
        return self

    @classmethod
    def load_from_file(cls, config_file: str) -> "Settings":
        """Load settings from a YAML config file.

        Args:
            config_file: Path to YAML config file

        Returns:
            Settings instance
        """
        import yaml

        with open(config_file, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    def get_database_path(self) -> Path:
        """Get the database path as a Path object.

        Returns:
            Path to database file
        """
        path = Path(self.database_path)
        # Create parent directory if it doesn't exist
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def get_database_url(self) -> str:
        """SQLAlchemy URL for the ledger database."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.get_database_path()}"
