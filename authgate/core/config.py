import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class Settings:
    """Centralised application configuration sourced from environment variables."""

    def __init__(self) -> None:
        load_dotenv()
        self.app_name = os.getenv("APP_NAME", "Authgate")
        self.app_url = os.getenv("APP_URL", "http://localhost:5000")
        self.storage_backend = os.getenv("STORAGE_BACKEND", "sqlite").strip().lower()
        if self.storage_backend not in {"sqlite", "memory"}:
            raise RuntimeError("STORAGE_BACKEND must be 'sqlite' or 'memory'")
        self.database_path = Path(os.getenv("DATABASE_PATH", "data/authgate.db")).resolve()

        self.jwt_secret = os.getenv("JWT_SECRET", "change-me")
        self.token_ttl_days = self._get_int("TOKEN_TTL_DAYS", default=30)
        self.temp_token_ttl_minutes = self._get_int("TEMP_TOKEN_TTL_MINUTES", default=5)
        self.verification_ttl_hours = self._get_int("VERIFICATION_TTL_HOURS", default=24)
        self.reset_ttl_hours = self._get_int("RESET_TTL_HOURS", default=1)
        self.bcrypt_rounds = self._get_int("BCRYPT_ROUNDS", default=10)
        self.totp_issuer = os.getenv("TOTP_ISSUER", "AuthSystem")
        self.totp_tolerance_steps = self._get_int("TOTP_TOLERANCE_STEPS", default=1)
        self.session_purge_interval_seconds = self._get_int(
            "SESSION_PURGE_INTERVAL_SECONDS", default=3600
        )
        self.revoke_sessions_on_password_change = self._get_bool(
            "REVOKE_SESSIONS_ON_PASSWORD_CHANGE", default=False
        )

        self.smtp_host = os.getenv("SMTP_HOST", "")
        self.smtp_port = self._get_int("SMTP_PORT", default=587)
        self.smtp_username = os.getenv("SMTP_USERNAME", "")
        self.smtp_password = os.getenv("SMTP_PASSWORD", "")
        self.smtp_use_tls = self._get_bool("SMTP_USE_TLS", default=True)
        self.smtp_timeout_seconds = self._get_int("SMTP_TIMEOUT_SECONDS", default=10)
        self.email_from_address = os.getenv("EMAIL_FROM_ADDRESS", "noreply@example.com")
        self.email_from_name = os.getenv("EMAIL_FROM_NAME", "Authentication System")

        origins = os.getenv("CORS_ALLOW_ORIGINS")
        if origins:
            self.cors_allow_origins = [item.strip() for item in origins.split(",") if item.strip()]
        else:
            self.cors_allow_origins = ["*"]

        # Peers whose X-Forwarded-For header is honoured. Empty means none.
        proxies = os.getenv("TRUSTED_PROXIES", "")
        self.trusted_proxies = [item.strip() for item in proxies.split(",") if item.strip()]

    @property
    def smtp_enabled(self) -> bool:
        return bool(self.smtp_host and self.email_from_address)

    @staticmethod
    def _get_int(key: str, default: Optional[int] = None) -> int:
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise RuntimeError(f"Missing required environment variable: {key}")
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Environment variable {key} must be an integer") from exc

    @staticmethod
    def _get_bool(key: str, default: bool) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise RuntimeError(f"Environment variable {key} must be a boolean")
