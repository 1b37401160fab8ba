"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_prefix="KUBEDB_OPERATOR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="kubedb-operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production)")
    log_level: str = Field(default="INFO", description="Logging level")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for default loading rules)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: str = Field(
        default="", description="Namespace to watch (empty string watches all namespaces)"
    )
    event_source_component: str = Field(
        default="kubedb-operator", description="Component name recorded on Kubernetes events"
    )

    # Workload
    governing_service_name: str = Field(
        default="kubedb", description="Headless service shared by all database pods in a namespace"
    )
    database_image: str = Field(default="kubedb/xdb", description="Database container image (tag = spec.version)")
    database_port: int = Field(default=5432, ge=1, le=65535, description="Database service port")
    backup_image: str = Field(default="kubedb/xdb-tools", description="Image used by scheduled backup jobs")
    restore_image: str = Field(default="kubedb/xdb-tools", description="Image used by restore jobs")
    restore_job_backoff_limit: int = Field(default=5, ge=0, le=20, description="Restore job pod retry budget")

    # Bounded waits
    stateful_set_ready_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Maximum wait for StatefulSet pods to become ready"
    )
    stateful_set_poll_interval_seconds: float = Field(
        default=5.0, gt=0, description="Seconds between StatefulSet readiness checks"
    )
    restore_timeout_seconds: float = Field(
        default=1800.0, gt=0, description="Maximum wait for a restore job (30 minutes)"
    )
    restore_poll_interval_seconds: float = Field(
        default=10.0, gt=0, description="Seconds between restore job status checks"
    )

    # Optimistic concurrency
    status_patch_max_attempts: int = Field(
        default=5, ge=1, le=20, description="Read-modify-write attempts before giving up on conflicts"
    )
    status_patch_backoff_min_seconds: float = Field(default=0.1, ge=0, description="First conflict backoff")
    status_patch_backoff_max_seconds: float = Field(default=5.0, ge=0, description="Conflict backoff ceiling")

    # Work dispatch
    max_concurrent_reconciles: int = Field(default=5, ge=1, le=100, description="Parallel reconciliations")
    requeue_base_delay_seconds: float = Field(default=5.0, gt=0, description="First requeue delay")
    requeue_max_delay_seconds: float = Field(default=300.0, gt=0, description="Requeue delay ceiling")
    requeue_jitter_factor: float = Field(default=0.1, ge=0.0, le=1.0, description="Requeue delay jitter (+/-)")
    requeue_max_attempts: int = Field(default=10, ge=1, description="Attempts before an item is dropped")

    # Monitoring
    metrics_enabled: bool = Field(default=True, description="Expose Prometheus metrics")
    metrics_port: int = Field(default=8080, ge=1, le=65535, description="Prometheus metrics port")

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

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def namespace_scoped(self) -> bool:
        """True when the operator watches a single namespace."""
        return bool(self.watch_namespace)


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings, loaded on first use."""
    return Settings()
