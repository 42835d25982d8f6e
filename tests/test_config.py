import pytest
from openrouter_proxy.config import Config, load_config


ENV_VARS = [
    "OPENROUTER_API_KEYS",
    "PORT",
    "HOST",
    "MAX_ATTEMPTS",
    "RATE_LIMIT_COOLDOWN_SECONDS",
    "FAILURE_THRESHOLD",
    "OPENROUTER_BASE_URL",
    "HTTP_REFERER",
    "SITE_NAME",
    "KEYS_FILE",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_config_loads_defaults(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEYS", "key1,key2")

    config = load_config(use_dotenv=False)

    assert config.api_keys == ["key1", "key2"]
    assert config.port == 3000
    assert config.host == "0.0.0.0"
    assert config.max_attempts == 3
    assert config.rate_limit_cooldown_seconds == 60
    assert config.failure_threshold == 5
    assert config.openrouter_base_url == "https://openrouter.ai/api"
    assert config.http_referer == "http://localhost:3000"
    assert config.site_name == "OpenRouterProxy"
    assert config.keys_file == ""
    assert config.log_level == "INFO"


def test_config_without_api_keys():
    config = load_config(use_dotenv=False)

    assert config.api_keys == []


def test_config_custom_values(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEYS", "custom_key")
    monkeypatch.setenv("PORT", "9000")
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setenv("MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RATE_LIMIT_COOLDOWN_SECONDS", "120")
    monkeypatch.setenv("FAILURE_THRESHOLD", "3")
    monkeypatch.setenv("OPENROUTER_BASE_URL", "https://custom.api.com")
    monkeypatch.setenv("HTTP_REFERER", "https://example.com")
    monkeypatch.setenv("SITE_NAME", "MyProxy")
    monkeypatch.setenv("KEYS_FILE", "/tmp/keys.json")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    config = load_config(use_dotenv=False)

    assert config.api_keys == ["custom_key"]
    assert config.port == 9000
    assert config.host == "127.0.0.1"
    assert config.max_attempts == 5
    assert config.rate_limit_cooldown_seconds == 120
    assert config.failure_threshold == 3
    assert config.openrouter_base_url == "https://custom.api.com"
    assert config.http_referer == "https://example.com"
    assert config.site_name == "MyProxy"
    assert config.keys_file == "/tmp/keys.json"
    assert config.log_level == "DEBUG"


def test_config_strips_whitespace(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEYS", " key1 , key2 ,, ")

    config = load_config(use_dotenv=False)

    assert config.api_keys == ["key1", "key2"]


def test_config_rejects_zero_attempts(monkeypatch):
    monkeypatch.setenv("MAX_ATTEMPTS", "0")

    with pytest.raises(ValueError, match="MAX_ATTEMPTS must be at least 1"):
        load_config(use_dotenv=False)


def test_config_rejects_bad_policy_values():
    with pytest.raises(ValueError, match="RATE_LIMIT_COOLDOWN_SECONDS"):
        Config(rate_limit_cooldown_seconds=0)

    with pytest.raises(ValueError, match="FAILURE_THRESHOLD"):
        Config(failure_threshold=0)
