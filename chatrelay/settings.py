from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Read from OS env and optional .env file in project root.
    _project_root = Path(__file__).parent.parent

    model_config = SettingsConfigDict(
        env_file=str(_project_root / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # CORS (the session endpoint is called from browsers)
    cors_allow_origins: str = Field(
        "http://localhost:3000",
        alias="CORS_ALLOW_ORIGINS",
        description="Allowed CORS origins, comma separated; '*' allows all",
    )

    # Redis connection string
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection URL, e.g. 'redis://redis:6379/0'",
    )

    # Session admission & credentials
    jwt_secret: str = Field(
        "please-change-me",
        alias="JWT_SECRET",
        description="HMAC secret used to sign session credentials; override in production",
    )
    jwt_issuer: str = Field("chatrelay", alias="JWT_ISSUER")
    jwt_audience: str = Field("chatrelay-ws", alias="JWT_AUDIENCE")
    max_sessions_per_ip: int = Field(
        5,
        alias="MAX_SESSIONS_PER_IP",
        description="Maximum number of live sessions a single source IP may hold",
        ge=1,
    )
    session_ttl_seconds: int = Field(
        3 * 60 * 60,
        alias="SESSION_TTL_SECONDS",
        description="Lifetime of a session record",
        ge=60,
    )
    token_ttl_seconds: int = Field(
        10 * 60,
        alias="TOKEN_TTL_SECONDS",
        description="Lifetime of a minted session credential",
        ge=10,
    )

    # Usage ledger
    token_quota: int = Field(
        50_000,
        alias="TOKEN_QUOTA",
        description="Model tokens (input + output) a session may spend per quota window",
        ge=1,
    )
    quota_window_seconds: int = Field(
        3 * 60 * 60,
        alias="QUOTA_WINDOW_SECONDS",
        description="Length of the rolling usage window",
        ge=60,
    )

    # Inference
    anthropic_api_key: str | None = Field(default=None, alias="ANTHROPIC_API_KEY")
    anthropic_base_url: str | None = Field(default=None, alias="ANTHROPIC_BASE_URL")
    default_model: str = Field("claude-3-7-sonnet-20250219", alias="DEFAULT_MODEL")
    default_system_prompt: str = Field(
        "You are a helpful assistant.",
        alias="DEFAULT_SYSTEM_PROMPT",
    )
    max_output_tokens: int = Field(1024, alias="MAX_OUTPUT_TOKENS", ge=1)
    history_window: int = Field(
        12,
        alias="HISTORY_WINDOW",
        description="Approximate number of history turns forwarded with each request",
        ge=1,
    )

    # Tool endpoints (consumed by the client-side bridge)
    github_search_url: str = Field(
        "http://localhost:9000/dev/gitSearch",
        alias="GITHUB_SEARCH_URL",
    )
    github_file_url: str = Field(
        "http://localhost:9000/dev/gitFile",
        alias="GITHUB_FILE_URL",
    )
    tool_timeout_seconds: float = Field(30.0, alias="TOOL_TIMEOUT_SECONDS", gt=0)
    ack_timeout_seconds: float = Field(10.0, alias="ACK_TIMEOUT_SECONDS", gt=0)
    delta_debounce_ms: int = Field(30, alias="DELTA_DEBOUNCE_MS", ge=0)

    # Bind address used when the relay is started through main.run().
    server_host: str = Field("0.0.0.0", alias="SERVER_HOST")
    server_port: int = Field(8000, alias="SERVER_PORT", gt=0)
    server_reload: bool = Field(False, alias="SERVER_RELOAD")

    # Application log level for our chatrelay logger.
    # Can be overridden via LOG_LEVEL env var, e.g. "DEBUG" while debugging.
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_timezone: str | None = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="Timezone name for log timestamps, e.g. 'Europe/Berlin'. Defaults to system local time.",
    )
    log_dir: str = Field("logs", alias="LOG_DIR")
    log_backup_days: int = Field(
        7,
        alias="LOG_BACKUP_DAYS",
        description="Keep the most recent N daily log files; 0 disables cleanup",
        ge=0,
    )

    @property
    def cors_origins(self) -> list[str]:
        if not self.cors_allow_origins:
            return []
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]

    @property
    def tool_endpoints(self) -> dict[str, str]:
        """
        Map of tool name (as advertised to the model) to its HTTP endpoint.
        """
        return {
            "github_search": self.github_search_url,
            "github_get_file": self.github_file_url,
        }


settings = Settings()  # Reads from environment if available


__all__ = ["Settings", "settings"]
