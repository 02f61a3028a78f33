from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Core
    database_url: str
    management_token: str
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    # Public URLs (callbacks and service hooks point back here)
    public_url: str = "http://localhost:8080"
    jobs_api_url: str | None = None
    webhook_endpoint: str | None = None

    # Docker/updater
    docker_host: str = "unix:///var/run/docker.sock"
    updater_image: str = "ghcr.io/tinglesoftware/dependabot-updater:latest"
    docker_network: str | None = None
    github_token: str | None = None

    # Job resources baseline
    job_cpu: float = 0.5
    job_memory: float = 1.0

    # Periodic tasks
    background_enabled: bool = True
    skip_load_schedules: bool = False
    missed_trigger_interval_minutes: int = 60
    cleanup_interval_minutes: int = 15
    synchronization_interval_hours: int = 6

    # Job lifecycle
    hung_job_minutes: int = 180
    stale_job_minutes: int = 10
    job_retention_days: int = 90
    cleanup_batch_size: int = 100
    log_collection_delay_seconds: int = 150

    # Message bus
    bus_poll_seconds: float = 1.0
    bus_max_attempts: int = 5
    bus_concurrency: int = 4
    bus_lease_seconds: int = 300

    # JSON list of projects to upsert at startup
    project_setups: str | None = None

    class Config:
        env_prefix = "DEPENDABOT_SERVER_"

    @property
    def resolved_jobs_api_url(self) -> str:
        return self.jobs_api_url or f"{self.public_url.rstrip('/')}/"

    @property
    def resolved_webhook_endpoint(self) -> str:
        return self.webhook_endpoint or f"{self.public_url.rstrip('/')}/webhooks/azure"


settings = Settings()
