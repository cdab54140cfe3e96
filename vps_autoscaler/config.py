#vps_autoscaler\config.py

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ControllerSettings(BaseSettings):
    """Controller configuration from environment variables (AUTOSCALER_*)."""

    model_config = SettingsConfigDict(
        env_prefix="AUTOSCALER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Worker pool / queue
    workers: int = Field(default=4, ge=1)
    default_requeue_seconds: float = 30.0
    fast_requeue_seconds: float = 10.0
    reconcile_deadline_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0
    resync_interval_seconds: float = 60.0
    rebalance_idle_requeue_seconds: float = 300.0

    # Leader election
    leader_election: bool = True
    lease_name: str = "vps-autoscaler-leader"
    lease_duration_seconds: int = 15
    lease_renew_interval_seconds: float = 5.0
    identity: Optional[str] = None

    # VPS provider API
    provider_base_url: str = "https://api.vpsie.com/apps/v2"
    provider_token: str = ""
    provider_timeout_seconds: float = 30.0
    provider_user_agent: str = "vps-autoscaler/0.1"
    provider_instance_quota: Optional[int] = None
    provider_breaker_threshold: int = 5
    provider_breaker_reset_seconds: float = 30.0

    # Kubernetes
    kubeconfig: Optional[str] = None
    in_cluster: bool = False
    events_namespace: str = "kube-system"
    event_buffer_size: int = 1000

    # Retry / backoff for transient errors
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    retry_max_attempts: int = 5

    # Node lifecycle
    provisioning_timeout_seconds: int = 600
    join_timeout_seconds: int = 900
    drain_timeout_seconds: int = 300

    # Rebalance candidate scoring
    score_age_weight: float = 1.0
    score_savings_weight: float = 0.1
    score_safety_penalty: float = 10.0

    # Persistence ("sql" or "memory")
    storage: str = "sql"
    database_url: str = "sqlite:///./autoscaler.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 3600
    echo_sql: bool = False

    # Node group definitions (JSON list) applied at startup
    nodegroups_file: Optional[str] = None

    # Status API
    api_enabled: bool = True
    api_host: str = "0.0.0.0"
    api_port: int = 8080


settings = ControllerSettings()
