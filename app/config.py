"""Application Configuration Management"""

import os
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    app_name: str = "Chat Two-Factor Service"
    debug: bool = False

    gcp_project_id: str = os.getenv("GCP_PROJECT_ID", "chat-two-factor")
    firestore_database: str = os.getenv("FIRESTORE_DATABASE", "(default)")
    firestore_two_factor_collection: str = "two_factor"
    firestore_login_tokens_collection: str = "login_tokens"
    firestore_users_collection: str = "users"

    # "memory" keeps everything in-process (local dev, tests),
    # "firestore" persists through the async Firestore client
    storage_backend: str = os.getenv("STORAGE_BACKEND", "memory")

    # Global switch. When off every check passes without a code.
    two_factor_enabled: bool = (
        os.getenv("TWO_FACTOR_ENABLED", "true").lower() == "true"
    )
    two_factor_totp_enabled: bool = (
        os.getenv("TWO_FACTOR_TOTP_ENABLED", "true").lower() == "true"
    )
    two_factor_email_enabled: bool = (
        os.getenv("TWO_FACTOR_EMAIL_ENABLED", "true").lower() == "true"
    )
    two_factor_email_available_for_oauth_users: bool = (
        os.getenv("TWO_FACTOR_EMAIL_AVAILABLE_FOR_OAUTH_USERS", "true").lower()
        == "true"
    )
    two_factor_enforce_password_fallback: bool = (
        os.getenv("TWO_FACTOR_ENFORCE_PASSWORD_FALLBACK", "true").lower() == "true"
    )

    # Adjacent 30s windows accepted on each side of the current one
    two_factor_max_delta: int = int(os.getenv("TWO_FACTOR_MAX_DELTA", "1"))

    # Trusted window after a successful check on a login token (0 disables)
    two_factor_remember_for_seconds: int = int(
        os.getenv("TWO_FACTOR_REMEMBER_FOR_SECONDS", "1800")
    )
    two_factor_max_failed_attempts: int = int(
        os.getenv("TWO_FACTOR_MAX_FAILED_ATTEMPTS", "5")
    )
    two_factor_email_code_ttl_seconds: int = int(
        os.getenv("TWO_FACTOR_EMAIL_CODE_TTL_SECONDS", "600")
    )
    two_factor_email_code_resend_seconds: int = int(
        os.getenv("TWO_FACTOR_EMAIL_CODE_RESEND_SECONDS", "300")
    )

    # Stored hash lists are always empty or exactly this long
    backup_code_count: int = 12
    # bcrypt work factor for backup code hashes
    backup_code_hash_rounds: int = int(os.getenv("BACKUP_CODE_HASH_ROUNDS", "12"))

    totp_issuer: str = os.getenv("TOTP_ISSUER", "Chat")

    from_email: str = os.getenv("FROM_EMAIL", "no-reply@chat.local")

    # Empty host means mail is logged instead of delivered
    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: str = os.getenv("SMTP_USERNAME", "")
    smtp_password: str = os.getenv("SMTP_PASSWORD", "")
    smtp_use_tls: bool = os.getenv("SMTP_USE_TLS", "true").lower() == "true"

    # Comma-separated user IDs allowed to reset another user's TOTP
    two_factor_admin_users: str = os.getenv("TWO_FACTOR_ADMIN_USERS", "")

    @property
    def two_factor_admin_user_ids(self) -> list[str]:
        """Parse comma-separated admin user IDs into a list"""
        if not self.two_factor_admin_users:
            return []
        return [
            user_id.strip()
            for user_id in self.two_factor_admin_users.split(",")
            if user_id.strip()
        ]

    # Authentication bypass paths (no auth required)
    auth_bypass_paths: list = [
        "/health",
        "/ready",
        "/api/v1/login",
        "/api/v1/2fa/send-email-code",
    ]

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    class Config:
        env_file = ".env.local"  # Use .env.local for local dev
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
