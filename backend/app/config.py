from datetime import timedelta

from pydantic_settings import BaseSettings, SettingsConfigDict


SUBSCRIPTION_KINDS = ("content_access", "messaging_access")


def _normalize_env(raw_value: str) -> str:
    normalized = raw_value.strip().lower()
    return "production" if normalized == "production" else "development"


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000
    LOG_LEVEL: str = "info"

    # Auth
    JWT_SECRET: str = ""
    PAYMENTS_INTERNAL_TOKEN: str = ""

    # Database
    DATABASE_URL: str = ""
    DB_STATEMENT_TIMEOUT_MS: int = 5000
    DB_SLOW_QUERY_MS: int = 300

    # Payments
    PAYMENTS_APPLY_MAX_RETRIES: int = 2

    # Business
    CONTENT_ACCESS_DURATION_DAYS: int = 30
    MESSAGING_ACCESS_DURATION_DAYS: int = 30
    CREATOR_REAPPLY_COOLDOWN_HOURS: int = 24
    CREATOR_MAX_REJECTIONS: int = 3

    # Notifications
    NOTIFICATIONS_RELAY_URL: str = ""
    NOTIFICATIONS_RELAY_TIMEOUT_SEC: float = 5.0
    NOTIFICATIONS_RELAY_MAX_RETRIES: int = 1

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def env_mode(self) -> str:
        return _normalize_env(self.APP_ENV)

    def is_production(self) -> bool:
        return self.env_mode() == "production"

    def subscription_duration(self, kind: str) -> timedelta:
        if kind == "messaging_access":
            days = self.MESSAGING_ACCESS_DURATION_DAYS
        elif kind == "content_access":
            days = self.CONTENT_ACCESS_DURATION_DAYS
        else:
            raise ValueError(f"unknown subscription kind: {kind}")
        return timedelta(days=max(1, int(days)))

    def reapply_cooldown(self) -> timedelta:
        return timedelta(hours=max(0, int(self.CREATOR_REAPPLY_COOLDOWN_HOURS)))

    def max_creator_rejections(self) -> int:
        return max(1, int(self.CREATOR_MAX_REJECTIONS))

    def payments_apply_attempts(self) -> int:
        return max(0, int(self.PAYMENTS_APPLY_MAX_RETRIES)) + 1


settings = Settings()
