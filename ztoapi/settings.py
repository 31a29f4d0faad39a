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

    # Gateway identity / client-facing defaults
    platform_id: str = Field(
        "zai",
        alias="PLATFORM_ID",
        description="Default upstream platform used when a model has no explicit route",
    )
    platforms: str = Field(
        "zai,zread",
        alias="PLATFORMS",
        description="Comma separated list of platform ids to register",
    )
    model_name: str = Field(
        "GLM-4.5",
        alias="MODEL_NAME",
        description="Model name used when the client omits `model`",
    )
    default_key: str = Field(
        "sk-your-key",
        alias="DEFAULT_KEY",
        description="API key clients must present as `Authorization: Bearer <key>`",
    )
    default_stream: bool = Field(
        True,
        alias="DEFAULT_STREAM",
        description="Stream responses when the client omits `stream`",
    )
    enable_thinking: bool = Field(
        False,
        alias="ENABLE_THINKING",
        description="Ask the upstream to produce a thinking trace",
    )
    think_tags_mode: str = Field(
        "strip",
        alias="THINK_TAGS_MODE",
        description="How thinking markup is rendered: strip / think / raw",
    )

    # Upstream credentials
    upstream_token: str = Field(
        "",
        alias="UPSTREAM_TOKEN",
        description="Pipe separated static token pool for the default platform",
    )
    zai_token: str = Field(
        "",
        alias="ZAI_TOKEN",
        description="Legacy name for UPSTREAM_TOKEN",
    )
    token_pool_strategy: str = Field(
        "random",
        alias="TOKEN_POOL_STRATEGY",
        description="Static pool selection strategy: random / round_robin",
    )
    anonymous_token_enabled: bool = Field(
        True,
        alias="ANONYMOUS_TOKEN_ENABLED",
        description="Fetch an anonymous guest token when no other token is available",
    )
    token_pool_key_template: str = Field(
        "token_pool:{platform_id}",
        alias="TOKEN_POOL_KEY_TEMPLATE",
        description="Redis hash holding account records for a platform",
    )

    # External key-value store (token pool + stats persistence)
    kv_url: str | None = Field(
        default=None,
        alias="KV_URL",
        description="Redis connection URL; unset disables the KV token pool and stats persistence",
    )
    redis_url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Fallback for KV_URL",
    )

    # Routing
    model_platform_map: str = Field(
        "",
        alias="MODEL_PLATFORM_MAP",
        description='JSON object: {"GLM-4.5": {"platform": "zai", "upstream": "0727-360B-API"}}',
    )
    upstream_model_id_map: str = Field(
        "",
        alias="UPSTREAM_MODEL_ID_MAP",
        description='JSON object mapping client model names to upstream ids on the default platform',
    )

    # Response cache
    response_cache_ttl: float = Field(
        60.0,
        alias="RESPONSE_CACHE_TTL",
        description="Seconds a non-streaming completion stays cached; 0 disables the cache",
        ge=0,
    )
    response_cache_max_entries: int = Field(
        1000,
        alias="RESPONSE_CACHE_MAX_ENTRIES",
        description="Hard cap on cached completions",
        ge=1,
    )

    # Timeouts (seconds)
    auth_timeout: float = Field(
        10.0,
        alias="AUTH_TIMEOUT",
        description="Timeout for the anonymous token request",
    )
    upstream_timeout: float = Field(
        45.0,
        alias="UPSTREAM_TIMEOUT",
        description="Default timeout for upstream chat requests",
    )

    mask_user_agent: str = Field(
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36",
        alias="MASK_USER_AGENT",
        description="User-Agent sent to platforms that do not use a randomized browser fingerprint",
    )

    dashboard_enabled: bool = Field(
        True,
        alias="DASHBOARD_ENABLED",
        description="Expose the JSON stats endpoints under /dashboard",
    )

    # Logging
    log_level: str = Field(
        "INFO",
        alias="LOG_LEVEL",
        description="Application log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_timezone: str | None = Field(
        default=None,
        alias="LOG_TIMEZONE",
        description="IANA timezone for log timestamps, e.g. Asia/Shanghai",
    )
    log_dir: str = Field(
        "logs",
        alias="LOG_DIR",
        description="Directory for daily log files",
    )

    port: int = Field(9090, alias="PORT", description="HTTP listen port")

    @property
    def static_tokens(self) -> list[str]:
        raw = self.upstream_token or self.zai_token
        return [tok.strip() for tok in raw.split("|") if tok.strip()]

    @property
    def kv_connection_url(self) -> str | None:
        return self.kv_url or self.redis_url or None

    @property
    def platform_ids(self) -> list[str]:
        ids = [p.strip().lower() for p in self.platforms.split(",") if p.strip()]
        default = self.platform_id.strip().lower()
        if default and default not in ids:
            ids.append(default)
        return ids


settings = Settings()
