from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://anchor:anchor@db:5432/anchor_tasks"
  app_secret: str = "dev-secret-change-me"
  app_version: str = "v2026-10-19"
  build_sha: str = "dev"
  api_docs_enabled: bool = True
  log_level: str = "INFO"

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
  cors_origin_regex: str = r"^http://(localhost|127\.0\.0\.1):3000$"
  trusted_hosts: str = "localhost,127.0.0.1,api,web"

  redis_url: str | None = None
  rate_limit_updates_per_minute: int = 60
  rate_limit_time_entries_per_minute: int = 60
  rate_limit_reports_per_minute: int = 20

  upload_dir: str = "data/uploads"
  max_attachment_bytes: int = 10 * 1024 * 1024

  notification_sink: str = "local"  # local | webhook | smtp
  notification_webhook_url: str | None = None
  smtp_host: str | None = None
  smtp_port: int = 587
  smtp_from: str | None = None
  smtp_starttls: bool = True
  notification_dedupe_minutes: int = 5

  due_soon_sweep_minutes: int = 15
  due_soon_sweep_timeout_seconds: int = 120
  due_soon_default_window_hours: int = 24
  archived_retention_days: int = 30
  purge_interval_minutes: int = 60

  automation_max_chain_depth: int = 8
  automation_failure_notify_admins: bool = True

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

  def trusted_host_list(self) -> list[str]:
    return [h.strip() for h in self.trusted_hosts.split(",") if h.strip()]


settings = Settings()
