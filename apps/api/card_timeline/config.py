from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
  model_config = SettingsConfigDict(env_file=".env", extra="ignore")

  database_url: str = "postgresql+asyncpg://timeline:timeline@db:5432/timeline"
  app_version: str = "v2026-10-18"
  build_sha: str = "dev"
  api_docs_enabled: bool = True
  log_level: str = "INFO"

  cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"

  trello_base_url: str = "https://api.trello.com/1"
  trello_api_key: str | None = None
  trello_token: str | None = None
  trello_user_agent: str = "card-timeline/0.1 (local)"

  google_client_id: str | None = None
  google_client_secret: str | None = None
  google_refresh_token: str | None = None
  google_token_url: str = "https://oauth2.googleapis.com/token"
  drive_base_url: str = "https://www.googleapis.com"
  drive_root_folder_id: str | None = None
  drive_fallback_folder: str = "OTHER_PROJECTS"

  large_file_threshold_bytes: int = 10 * 1024 * 1024
  training_card_id: str = "training-rsa999"
  source_system_keyword: str = "trello"
  reconcile_remove_stale: bool = True
  max_reconcile_sessions: int = 1000
  display_timezone: str = "UTC"

  def cors_origin_list(self) -> list[str]:
    return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
