import pytest

from openapi_plugins.audit import log_sink
from openapi_plugins.config import Settings, get_settings


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_defaults():
    settings = Settings()
    assert settings.verify_tls is True
    assert settings.audit_requests is False
    assert settings.default_timeout_seconds == 30


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("OPENAPI_PLUGINS_DEFAULT_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("OPENAPI_PLUGINS_AUDIT_REQUESTS", "true")
    settings = get_settings()
    assert settings.default_timeout_seconds == 5
    assert settings.audit_requests is True
    assert get_settings() is settings


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("OPENAPI_PLUGINS_LOG_LEVEL=DEBUG\n", encoding="utf-8")
    assert Settings().log_level == "DEBUG"


def test_transport_config_defaults():
    config = Settings(default_timeout_seconds=12).transport_config()
    assert config.timeout == 12
    assert config.verify_tls is True
    assert config.audit_sink is None


def test_transport_config_overrides_skip_none():
    settings = Settings(audit_requests=True)
    config = settings.transport_config(
        base_url_override="http://localhost:5275/", headers=None, verify_tls=False
    )
    assert config.base_url_override == "http://localhost:5275/"
    assert config.headers == {}
    assert config.verify_tls is False
    assert config.audit_sink is log_sink
