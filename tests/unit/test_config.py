# pylint: disable=missing-module-docstring,missing-function-docstring

import pytest

from config import AppConfig


ENV_VARS = [
    "OPENAI_API_KEY", "OPENAI_REALTIME_MODEL", "OPENAI_REALTIME_URL", "REALTIME_MODALITIES",
    "MAX_RETRIES", "RETRY_DELAY_MS", "CONNECTION_TIMEOUT_MS", "HANDSHAKE_TIMEOUT_MS",
    "RELAY_GREETING", "TRANSCRIPTION_MODEL", "PORT", "ENABLE_JSON_LOGS",
    "FRAME_SIZE", "MAX_RESPONSE_TOKENS", "PENDING_QUEUE_MAX", "LOG_LEVEL", "OPENAI_BETA_HEADER",
    "REALTIME_VOICE", "REALTIME_INSTRUCTIONS", "RELAY_HOST", "RELAY_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_the_reference_behaviour():
    config = AppConfig.load_from_env()

    assert config.max_retries == 3
    assert config.retry_delay_ms == 1000
    assert config.connect_timeout_ms == 15000
    assert config.max_response_tokens == 500
    assert config.relay_port == 3000
    assert config.greeting == "Hello"
    assert config.frame_size == 2400


def test_values_are_read_from_the_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("OPENAI_REALTIME_MODEL", "gpt-test")
    monkeypatch.setenv("MAX_RETRIES", "5")
    monkeypatch.setenv("RETRY_DELAY_MS", "250")
    monkeypatch.setenv("HANDSHAKE_TIMEOUT_MS", "2000")
    monkeypatch.setenv("REALTIME_MODALITIES", "text, audio")
    monkeypatch.setenv("RELAY_GREETING", "")
    monkeypatch.setenv("ENABLE_JSON_LOGS", "0")

    config = AppConfig.load_from_env()

    assert config.openai_api_key == "sk-env"
    assert config.modalities == ("text", "audio")
    assert config.greeting is None
    assert not config.enable_json_logs

    policy = config.connection_policy()
    assert policy.max_retries == 5
    assert policy.retry_delay_s == 0.25
    assert policy.handshake_timeout_s == 2.0
    assert config.upstream_endpoint() == "wss://api.openai.com/v1/realtime?model=gpt-test"


@pytest.mark.parametrize("name, value", [("MAX_RETRIES", "three"), ("MAX_RETRIES", "-1"), ("PORT", "0")])
def test_invalid_numbers_fail_at_load_time(monkeypatch: pytest.MonkeyPatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        AppConfig.load_from_env()


def test_upstream_headers_need_a_key():
    with pytest.raises(RuntimeError):
        AppConfig().upstream_headers()

    headers = AppConfig(openai_api_key="sk-1").upstream_headers()
    assert headers == {"Authorization": "Bearer sk-1", "OpenAI-Beta": "realtime=v1"}


def test_session_settings_follow_config():
    settings = AppConfig(voice="verse", max_response_tokens=100, transcription_model=None).session_settings()

    assert settings.voice == "verse"
    assert settings.max_response_tokens == 100
    assert settings.transcription_model is None
