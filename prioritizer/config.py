from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = "sqlite:///data/prioritizer.db"
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000"  # comma-separated
    upload_max_mb: int = 20

    # One-time passcodes
    otp_ttl_minutes: int = 10
    otp_max_per_hour: int = 5
    otp_max_attempts: int = 5
    allowed_email_domains: str = ""  # comma-separated, empty allows any domain

    # Access tokens issued after OTP verification
    secret_key: str = "change-me-in-production"
    access_token_ttl_minutes: int = 12 * 60

    # Outbound mail (console mailer is used when smtp_host is empty)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    email_from: str = "noreply@prioritizer.local"

    jira_timeout_seconds: float = 15.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def allowed_domain_set(self) -> set[str]:
        return {d.strip().lower() for d in self.allowed_email_domains.split(",") if d.strip()}


settings = Settings()
