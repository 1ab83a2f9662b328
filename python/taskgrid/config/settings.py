"""
Configuration management using Pydantic Settings.
Every key can be set through a ``TASKGRID_``-prefixed environment variable or
a ``.env`` file.
"""
import logging
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskgrid.scheduling.models import LoadBalancingStrategy


class Settings(BaseSettings):
    """Application and scheduler settings.

    Satisfies ``taskgrid.interfaces.ISchedulerConfig`` structurally.
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKGRID_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="TaskGrid", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment: development, staging, production")
    debug: bool = Field(default=False, description="Debug mode")

    # API
    api_host: str = Field(default="127.0.0.1", description="API host")
    api_port: int = Field(default=8000, ge=1024, le=65535, description="API port")

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:8000", "http://127.0.0.1:8000"],
        description="Allowed CORS origins"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="text", description="Log format: json or text")

    # Scheduler
    auto_assign_tasks: bool = Field(default=True, description="Assign tasks as soon as agents are available")
    max_assignment_attempts: int = Field(default=10, ge=1, le=1000, description="Assignments per reconciliation pass")
    load_balancing_enabled: bool = Field(default=True, description="Use the load balancer instead of best match")
    load_balancing_strategy: LoadBalancingStrategy = Field(
        default=LoadBalancingStrategy.BALANCED,
        description="balanced, performance-optimized or capacity-optimized",
    )
    max_reassignments_per_cycle: int = Field(default=3, ge=0, description="Rebalancing moves per cycle")
    utilization_threshold: float = Field(
        default=80.0, ge=0.0, le=100.0, description="Percent utilization treated as overloaded"
    )
    matcher_min_score: float = Field(default=0.0, ge=0.0, le=1.0, description="Minimum composite agent score")
    soft_dependency_boost: int = Field(default=5, ge=0, description="Priority added when soft dependencies complete")

    # Notifications
    notifications_max_stored: int = Field(default=1000, ge=1, description="Notifications kept in memory")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of allowed values."""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        allowed = ["json", "text"]
        if v not in allowed:
            raise ValueError(f"Log format must be one of {allowed}")
        return v

    @field_validator("load_balancing_strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v):
        """Accept strategy names with underscores or mixed case."""
        if isinstance(v, str):
            return v.strip().lower().replace("_", "-")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def get_log_level(self) -> int:
        """Get logging level as integer."""
        return getattr(logging, self.log_level)

    # ── ISchedulerConfig ─────────────────────────────────────────────

    def is_auto_assign_tasks(self) -> bool:
        return self.auto_assign_tasks

    def is_load_balancing_enabled(self) -> bool:
        return self.load_balancing_enabled

    def get_load_balancing_strategy(self) -> LoadBalancingStrategy:
        return self.load_balancing_strategy

    def get_max_reassignments_per_cycle(self) -> int:
        return self.max_reassignments_per_cycle

    def get_utilization_threshold(self) -> float:
        return self.utilization_threshold


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings
    """
    return Settings()
