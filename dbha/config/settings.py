"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """HA sidecar settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="dbha", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server (probe / control endpoints)
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=3501, ge=1, le=65535, description="Server port")

    # Process identity
    pod_name: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("pod_name", "hostname"),
        description="Name of the pod this member runs in",
    )
    db_type: str = Field(default="postgresql", description="Database engine type")

    # Replica group
    namespace: str = Field(default="default", description="Namespace of the replica group")
    cluster_name: str = Field(..., min_length=1, description="Cluster name")
    component_name: str = Field(..., min_length=1, description="Component name")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=True, description="Running inside Kubernetes cluster")

    # Lease / HA loop
    ttl: int = Field(default=15, ge=2, le=3600, description="Leader lease validity in seconds")
    resync_period: float = Field(default=10.0, gt=0, description="Fallback reconciliation interval in seconds")
    grace_period: float = Field(default=2.0, ge=0, description="Wait before following when not eligible")
    renew_retries: int = Field(default=3, ge=1, le=10, description="Lease renewal attempts per tick")
    member_touch_interval: float = Field(default=5.0, gt=0, description="Member heartbeat interval in seconds")
    adapter_call_timeout: float = Field(default=5.0, gt=0, description="Deadline for a single adapter call")
    store_call_timeout: float = Field(default=5.0, gt=0, description="Deadline for a single lease store call")
    tick_timeout: float = Field(default=30.0, gt=0, description="Deadline for a whole reconciliation tick")

    # Topology (declared shape of the replica group)
    replicas: int = Field(default=3, ge=1, description="Number of pods in the replica group")
    learner_replicas: int = Field(default=0, ge=0, le=1, description="Number of non-voting learners")
    follower_access_mode: str = Field(default="Readonly", description="Access mode of followers")
    update_strategy: str = Field(default="Serial", description="Update rollout strategy")

    # PostgreSQL adapter
    database_url: str = Field(
        default="postgresql://postgres@localhost:5432/postgres",
        description="Connection URL of the local database engine",
    )
    pgdata: str = Field(default="/var/lib/postgresql/data", description="PostgreSQL data directory")
    pg_ctl_path: str = Field(default="pg_ctl", description="Path to pg_ctl")
    replication_user: str = Field(default="postgres", description="User followers replicate as")
    replication_port: int = Field(default=5432, ge=1, le=65535, description="Port followers replicate from")
    headless_service: Optional[str] = Field(
        default=None, description="Headless service used to resolve peer pod addresses"
    )

    # Monitoring
    prometheus_enabled: bool = Field(default=True, description="Enable Prometheus metrics")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "testing", "staging", "production"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @field_validator("db_type")
    @classmethod
    def validate_db_type(cls, v: str) -> str:
        """Normalize the engine tag; registry membership is checked at startup."""
        return v.strip().lower()

    @field_validator("follower_access_mode")
    @classmethod
    def validate_follower_access_mode(cls, v: str) -> str:
        """Validate follower access mode."""
        valid_modes = ["None", "Readonly", "ReadWrite"]
        if v not in valid_modes:
            raise ValueError(f"Follower access mode must be one of {valid_modes}")
        return v

    @field_validator("update_strategy")
    @classmethod
    def validate_update_strategy(cls, v: str) -> str:
        """Validate update strategy."""
        valid_strategies = ["Serial", "BestEffortParallel", "Parallel"]
        if v not in valid_strategies:
            raise ValueError(f"Update strategy must be one of {valid_strategies}")
        return v

    @model_validator(mode="after")
    def validate_timing(self) -> "Settings":
        """Renewal must happen well inside the lease."""
        if self.resync_period >= self.ttl:
            raise ValueError(
                f"resync_period ({self.resync_period}) must be < ttl ({self.ttl})"
            )
        if self.learner_replicas >= self.replicas:
            raise ValueError("learner_replicas must leave room for a leader")
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def cluster_comp_name(self) -> str:
        """Prefix shared by every coordination object of this replica group."""
        return f"{self.cluster_name}-{self.component_name}"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Return the process settings, loading them on first use.

    Raises:
        pydantic.ValidationError: If required startup parameters are missing
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
