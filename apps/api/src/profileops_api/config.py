from __future__ import annotations

import os
from dataclasses import dataclass

PROVIDER_MODES = ("http", "mock")
DEFAULT_PROVIDER_URL = "https://api.gologin.com"


class ConfigurationError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    state_file: str | None = None
    provider_mode: str = "http"
    provider_url: str = DEFAULT_PROVIDER_URL
    provider_api_key: str | None = None
    provider_timeout_seconds: float = 30.0
    mock_delay_seconds: float = 0.05
    cors_allow_origins: tuple[str, ...] = ("null",)
    cors_allow_origin_regex: str = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        provider_mode = _env_or_default("PROFILEOPS_PROVIDER_MODE", "http").lower()
        if provider_mode not in PROVIDER_MODES:
            raise ConfigurationError(
                f"PROFILEOPS_PROVIDER_MODE must be one of {', '.join(PROVIDER_MODES)}, got {provider_mode!r}"
            )
        return cls(
            state_file=_env_optional("PROFILEOPS_STATE_FILE"),
            provider_mode=provider_mode,
            provider_url=_env_or_default("PROFILEOPS_PROVIDER_URL", DEFAULT_PROVIDER_URL),
            provider_api_key=_env_optional("PROFILEOPS_PROVIDER_API_KEY"),
            provider_timeout_seconds=_env_float("PROFILEOPS_PROVIDER_TIMEOUT_SECONDS", 30.0),
            mock_delay_seconds=_env_float("PROFILEOPS_MOCK_DELAY_SECONDS", 0.05),
            cors_allow_origins=tuple(_parse_csv_env("PROFILEOPS_CORS_ALLOW_ORIGINS", default="null")),
            cors_allow_origin_regex=_env_or_default(
                "PROFILEOPS_CORS_ALLOW_ORIGIN_REGEX",
                r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
            ),
            log_level=_env_or_default("PROFILEOPS_LOG_LEVEL", "INFO").upper(),
            log_file=_env_optional("PROFILEOPS_LOG_FILE"),
        )

    def require_provider_credentials(self) -> None:
        if self.provider_mode == "mock":
            return
        self.http_provider_api_key()

    def http_provider_api_key(self) -> str:
        """API key for the http provider, after checking the key and url are usable."""
        if not self.provider_api_key:
            raise ConfigurationError("Provider API key not found. Set PROFILEOPS_PROVIDER_API_KEY first.")
        if not self.provider_url.startswith(("http://", "https://")):
            raise ConfigurationError("PROFILEOPS_PROVIDER_URL must be an absolute http(s) url")
        return self.provider_api_key


def _env_or_default(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    trimmed = value.strip()
    return trimmed if trimmed else default


def _env_optional(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or None


def _env_float(name: str, default: float) -> float:
    raw = _env_or_default(name, str(default))
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative")
    return value


def _parse_csv_env(name: str, default: str = "") -> list[str]:
    value = _env_or_default(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]
