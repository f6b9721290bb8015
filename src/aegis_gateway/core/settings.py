"""Application settings and configuration.

This module defines all configuration options for the Aegis gateway.
Settings are loaded from environment variables with sensible defaults.
List-valued options are plain comma-separated strings so they can be set
from a shell without JSON quoting; use the ``*_list`` properties to read them.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def split_csv(value: str) -> list[str]:
    """Split a comma-separated option into trimmed, non-empty items."""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Gateway settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="Aegis Gateway", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Bearer credentials
    secret_key: str = Field(alias="SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Database configuration
    database_url: str = Field(default="sqlite:///./aegis.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Shared counter store (rate limits and CSRF tokens)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    redis_enabled: bool = Field(default=True, alias="REDIS_ENABLED")
    redis_timeout_seconds: float = Field(default=0.25, alias="REDIS_TIMEOUT_SECONDS")
    redis_retry_seconds: float = Field(default=30.0, alias="REDIS_RETRY_SECONDS")

    # Client identity
    trusted_proxies: str = Field(default="", alias="TRUSTED_PROXIES")

    # Fixed-window rate limits per category
    rate_limit_login_max: int = Field(default=5, alias="RATE_LIMIT_LOGIN_MAX")
    rate_limit_login_window_seconds: int = Field(
        default=900, alias="RATE_LIMIT_LOGIN_WINDOW_SECONDS"
    )
    rate_limit_register_max: int = Field(default=3, alias="RATE_LIMIT_REGISTER_MAX")
    rate_limit_register_window_seconds: int = Field(
        default=3600, alias="RATE_LIMIT_REGISTER_WINDOW_SECONDS"
    )
    rate_limit_admin_max: int = Field(default=60, alias="RATE_LIMIT_ADMIN_MAX")
    rate_limit_admin_window_seconds: int = Field(
        default=900, alias="RATE_LIMIT_ADMIN_WINDOW_SECONDS"
    )
    rate_limit_api_max: int = Field(default=100, alias="RATE_LIMIT_API_MAX")
    rate_limit_api_window_seconds: int = Field(default=900, alias="RATE_LIMIT_API_WINDOW_SECONDS")
    rate_limit_general_max: int = Field(default=300, alias="RATE_LIMIT_GENERAL_MAX")
    rate_limit_general_window_seconds: int = Field(
        default=900, alias="RATE_LIMIT_GENERAL_WINDOW_SECONDS"
    )

    # CSRF protection (double-submit cookie)
    csrf_token_ttl_seconds: int = Field(default=86_400, alias="CSRF_TOKEN_TTL_SECONDS")
    csrf_rotation_grace_seconds: int = Field(default=30, alias="CSRF_ROTATION_GRACE_SECONDS")
    csrf_cookie_name: str = Field(default="csrf-token", alias="CSRF_COOKIE_NAME")
    csrf_header_name: str = Field(default="x-csrf-token", alias="CSRF_HEADER_NAME")
    session_cookie_name: str = Field(default="session_id", alias="SESSION_COOKIE_NAME")
    csrf_protected_prefixes: str = Field(
        default="/api/,/auth/,/admin", alias="CSRF_PROTECTED_PREFIXES"
    )
    csrf_exempt_prefixes: str = Field(default="/api/health", alias="CSRF_EXEMPT_PREFIXES")

    # Request routing policy
    excluded_paths: str = Field(
        default="/health,/healthz,/ping,/api/health,/favicon.ico,/robots.txt,/static",
        alias="EXCLUDED_PATHS",
    )
    privileged_path_prefixes: str = Field(
        default="/api/v1/admin", alias="PRIVILEGED_PATH_PREFIXES"
    )
    suspicious_user_agents: str = Field(
        default="sqlmap,nikto,nmap,masscan,zgrab,dirbuster,gobuster,wpscan,scanner",
        alias="SUSPICIOUS_USER_AGENTS",
    )
    suspicious_paths: str = Field(
        default="/wp-admin,/wp-login,/phpmyadmin,/.env,/.git,/config,/cgi-bin",
        alias="SUSPICIOUS_PATHS",
    )
    max_body_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_BODY_BYTES")

    # Audit trail
    audit_persist: bool = Field(default=True, alias="AUDIT_PERSIST")
    audit_retention_days: int = Field(default=90, alias="AUDIT_RETENTION_DAYS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def trusted_proxy_list(self) -> list[str]:
        """Return the configured trusted proxy addresses."""
        return split_csv(self.trusted_proxies)

    @property
    def excluded_path_list(self) -> list[str]:
        """Return paths that bypass the gateway entirely."""
        return split_csv(self.excluded_paths)

    @property
    def privileged_prefix_list(self) -> list[str]:
        """Return path prefixes gated by the per-principal IP allow-list."""
        return split_csv(self.privileged_path_prefixes)

    @property
    def csrf_protected_prefix_list(self) -> list[str]:
        """Return path prefixes where state-changing requests need a CSRF token."""
        return split_csv(self.csrf_protected_prefixes)

    @property
    def csrf_exempt_prefix_list(self) -> list[str]:
        """Return path prefixes exempt from CSRF validation."""
        return split_csv(self.csrf_exempt_prefixes)

    @property
    def suspicious_user_agent_list(self) -> list[str]:
        """Return user-agent fragments that mark a request as suspicious."""
        return [item.lower() for item in split_csv(self.suspicious_user_agents)]

    @property
    def suspicious_path_list(self) -> list[str]:
        """Return path fragments that mark a request as suspicious."""
        return [item.lower() for item in split_csv(self.suspicious_paths)]

    @property
    def rate_limits(self) -> dict[str, tuple[int, int]]:
        """Return ``{category: (max_requests, window_seconds)}``.

        Returns:
            Dictionary keyed by rate-limit category
        """
        return {
            "login": (self.rate_limit_login_max, self.rate_limit_login_window_seconds),
            "register": (self.rate_limit_register_max, self.rate_limit_register_window_seconds),
            "admin": (self.rate_limit_admin_max, self.rate_limit_admin_window_seconds),
            "api": (self.rate_limit_api_max, self.rate_limit_api_window_seconds),
            "general": (self.rate_limit_general_max, self.rate_limit_general_window_seconds),
        }


settings = Settings()  # type: ignore[call-arg]
