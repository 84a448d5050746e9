import logging

import pytest

from profileops_api.config import ConfigurationError, Settings
from profileops_api.logging_setup import _ConsoleNoiseFilter


def test_from_env_reads_profileops_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROFILEOPS_PROVIDER_MODE", "MOCK")
    monkeypatch.setenv("PROFILEOPS_PROVIDER_API_KEY", "  gl-key  ")
    monkeypatch.setenv("PROFILEOPS_STATE_FILE", "/tmp/profileops-state.json")
    monkeypatch.setenv("PROFILEOPS_MOCK_DELAY_SECONDS", "0")
    monkeypatch.setenv("PROFILEOPS_CORS_ALLOW_ORIGINS", "http://a.test, ,http://b.test")
    monkeypatch.setenv("PROFILEOPS_LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.provider_mode == "mock"
    assert settings.provider_api_key == "gl-key"
    assert settings.state_file == "/tmp/profileops-state.json"
    assert settings.mock_delay_seconds == 0
    assert settings.cors_allow_origins == ("http://a.test", "http://b.test")
    assert settings.log_level == "DEBUG"


def test_from_env_defaults_when_unset(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "PROFILEOPS_PROVIDER_MODE",
        "PROFILEOPS_PROVIDER_API_KEY",
        "PROFILEOPS_PROVIDER_URL",
        "PROFILEOPS_STATE_FILE",
        "PROFILEOPS_PROVIDER_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROFILEOPS_PROVIDER_URL", "   ")

    settings = Settings.from_env()

    assert settings.provider_mode == "http"
    assert settings.provider_api_key is None
    assert settings.provider_url == "https://api.gologin.com"
    assert settings.provider_timeout_seconds == 30.0
    assert settings.state_file is None


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("PROFILEOPS_PROVIDER_MODE", "selenium"),
        ("PROFILEOPS_PROVIDER_TIMEOUT_SECONDS", "soon"),
        ("PROFILEOPS_MOCK_DELAY_SECONDS", "-1"),
    ],
)
def test_from_env_rejects_invalid_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        Settings.from_env()


def test_require_provider_credentials() -> None:
    Settings(provider_mode="mock").require_provider_credentials()
    Settings(provider_api_key="gl-key").require_provider_credentials()

    with pytest.raises(ConfigurationError, match="Provider API key not found"):
        Settings(provider_api_key="").require_provider_credentials()
    with pytest.raises(ConfigurationError):
        Settings(provider_api_key="gl-key", provider_url="ftp://provider.test").require_provider_credentials()


def test_console_filter_quiets_http_client_debug_logs() -> None:
    noise_filter = _ConsoleNoiseFilter()

    def _record(name: str, level: int) -> logging.LogRecord:
        return logging.LogRecord(name, level, __file__, 1, "message", None, None)

    assert noise_filter.filter(_record("httpx", logging.INFO)) is False
    assert noise_filter.filter(_record("httpx", logging.WARNING)) is True
    assert noise_filter.filter(_record("profileops_api.task_queue", logging.DEBUG)) is True


def test_http_provider_api_key_returns_validated_key() -> None:
    assert Settings(provider_api_key="gl-key").http_provider_api_key() == "gl-key"

    with pytest.raises(ConfigurationError):
        Settings(provider_api_key=None).http_provider_api_key()
