"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is driven by environment variables."""

    # API key (blank disables the check)
    fleet_api_key: str = ""

    # Server defaults
    fleet_default_ssh_port: int = 22
    fleet_default_ssh_username: str = "deploy"
    fleet_default_workdir: str = "/var/www/html"
    fleet_default_max_concurrent_commands: int = 1

    # Connection pool
    fleet_connect_timeout_seconds: float = 15.0
    fleet_connect_retries: int = 2
    fleet_connect_backoff_seconds: float = 0.5
    fleet_acquire_timeout_seconds: float = 60.0
    fleet_pool_idle_ttl_seconds: float = 300.0
    fleet_pool_reap_interval_seconds: float = 30.0
    fleet_ssh_worker_threads: int = 32
    fleet_ssh_keepalive_seconds: int = 30

    # Execution
    fleet_command_timeout_seconds: float = 600.0
    fleet_max_output_bytes: int = 1_048_576
    fleet_enforce_denylist: bool = True

    # Notification fan-out
    fleet_subscriber_backlog: int = 256

    # Audit / credentials persistence
    fleet_audit_log_path: str = ""
    fleet_credentials_dir: str = ""

    # Logging
    fleet_log_level: str = "INFO"
    fleet_log_json: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


# Singleton – import this from anywhere
settings = Settings()
