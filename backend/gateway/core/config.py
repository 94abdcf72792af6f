"""Gateway configuration: the resolved config object and its env loader."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from gateway.core.access import parse_allowlist_entry

GATEWAY_VERSION = "0.1.0"


class RateLimitConfig(BaseModel):
    """Fixed-window limits applied per client identity."""

    model_config = ConfigDict(frozen=True)

    window_ms: int = Field(default=60_000, gt=0)
    max: int = Field(default=60, gt=0)


class GatewayConfig(BaseModel):
    """Fully resolved settings consumed by the gateway core.

    ``allowlist`` has no default on purpose: an empty list denies every
    source address, and leaving it unset is not a valid configuration.
    """

    model_config = ConfigDict(frozen=True)

    host: str = "127.0.0.1"
    port: int = Field(default=8787, ge=0, le=65535)
    token: str | None = None
    allowlist: list[str]
    store_path: str = ":memory:"
    idempotency_ttl_ms: int = Field(default=10 * 60 * 1000, gt=0)
    event_ttl_ms: int = Field(default=24 * 60 * 60 * 1000, gt=0)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    trust_proxy: bool = False
    idempotency_wait_timeout_ms: int = Field(default=10_000, gt=0)
    idempotency_poll_interval_ms: int = Field(default=50, gt=0)
    sweep_interval_ms: int = Field(default=1_000, ge=0)
    max_body_bytes: int = Field(default=1_000_000, gt=0)
    handler_max_concurrency: int = Field(default=8, gt=0)
    events_poll_limit: int = Field(default=100, gt=0)

    @field_validator("token")
    @classmethod
    def _blank_token_means_open(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("allowlist")
    @classmethod
    def _validate_allowlist(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for raw in value:
            # Raises ValueError for malformed entries, surfaced as a validation error.
            parse_allowlist_entry(raw)
            cleaned.append(raw.strip())
        return cleaned


class Settings(BaseSettings):
    """Environment-backed settings used by ``run_server.py``."""

    # Read .env with BOM tolerance; keys are GATEWAY_* and case-sensitive
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        env_prefix="GATEWAY_",
        case_sensitive=True,
    )

    APP_NAME: str = "Gateway"
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    # Import string for the application handler, e.g. "myapp.handlers:dispatch".
    HANDLER: str = "gateway.core.handler:echo_handler"

    HOST: str = "127.0.0.1"
    PORT: int = 8787
    TOKEN: str | None = None
    ALLOWLIST: list[str]  # set via env/.env, e.g. GATEWAY_ALLOWLIST='["127.0.0.1"]'
    STORE_PATH: str = "./workspace/gateway.db"
    IDEMPOTENCY_TTL_MS: int = 10 * 60 * 1000
    EVENT_TTL_MS: int = 24 * 60 * 60 * 1000
    RATE_LIMIT_WINDOW_MS: int = 60_000
    RATE_LIMIT_MAX: int = 60

    TRUST_PROXY: bool = False
    IDEMPOTENCY_WAIT_TIMEOUT_MS: int = 10_000
    IDEMPOTENCY_POLL_INTERVAL_MS: int = 50
    SWEEP_INTERVAL_MS: int = 1_000
    MAX_BODY_BYTES: int = 1_000_000
    HANDLER_MAX_CONCURRENCY: int = 8
    EVENTS_POLL_LIMIT: int = 100

    def gateway_config(self) -> GatewayConfig:
        return GatewayConfig(
            host=self.HOST,
            port=self.PORT,
            token=self.TOKEN,
            allowlist=self.ALLOWLIST,
            store_path=self.STORE_PATH,
            idempotency_ttl_ms=self.IDEMPOTENCY_TTL_MS,
            event_ttl_ms=self.EVENT_TTL_MS,
            rate_limit=RateLimitConfig(
                window_ms=self.RATE_LIMIT_WINDOW_MS,
                max=self.RATE_LIMIT_MAX,
            ),
            trust_proxy=self.TRUST_PROXY,
            idempotency_wait_timeout_ms=self.IDEMPOTENCY_WAIT_TIMEOUT_MS,
            idempotency_poll_interval_ms=self.IDEMPOTENCY_POLL_INTERVAL_MS,
            sweep_interval_ms=self.SWEEP_INTERVAL_MS,
            max_body_bytes=self.MAX_BODY_BYTES,
            handler_max_concurrency=self.HANDLER_MAX_CONCURRENCY,
            events_poll_limit=self.EVENTS_POLL_LIMIT,
        )
