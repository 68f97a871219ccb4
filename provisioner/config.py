"""Provisioner configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Provisioner settings loaded from environment variables."""

    # Hypervisor API
    hypervisor_url: str = "https://localhost:8006/api"
    hypervisor_node: str = "pve"
    api_token: str = ""  # Issued by the caller, sent as a bearer token
    http_timeout: float = 30.0  # seconds, status and config lookups
    mutation_timeout: float = 300.0  # seconds, create/start/stop/delete

    # Transient error retry (capped exponential backoff)
    retry_max_attempts: int = 5
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 30.0

    # Status polling after a mutating call (provisioning is asynchronous)
    status_poll_interval: float = 2.0
    status_poll_attempts: int = 30

    # Readiness probe
    readiness_probe: str = "tcp"  # tcp, http, none
    readiness_port: int = 22
    readiness_path: str = "/ready"  # http probe only
    readiness_interval: float = 2.0
    readiness_max_attempts: int = 30
    readiness_connect_timeout: float = 3.0
    probe_when_running: bool = False

    # Lifecycle behaviour
    force_stop_fallback: bool = True
    check_conflicts: bool = True

    # Fleet runs
    max_concurrency: int = 4
    reconcile_timeout: float = 900.0  # seconds, per target

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json, text

    class Config:
        env_prefix = "PROVISIONER_"


settings = Settings()
