from app.config import DEFAULT_VERIFY_TOKEN, load_settings


def test_defaults_from_empty_env(monkeypatch):
    for name in ("VERIFY_TOKEN", "LLM_PROVIDER", "HISTORY_MAX_TURNS", "OPENROUTER_API_KEY", "GEMINI_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.verify_token == DEFAULT_VERIFY_TOKEN
    assert settings.llm_provider == "mock"
    assert settings.history_max_turns == 10
    assert settings.rate_limit_seconds == 2.0
    assert settings.display_timezone == "Asia/Baghdad"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("USE_MOCK", "0")
    monkeypatch.setenv("VERIFY_TOKEN", "abc")
    monkeypatch.setenv("GEMINI_API_KEY", "g")
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    monkeypatch.setenv("HISTORY_MAX_TURNS", "6")
    monkeypatch.setenv("SESSION_TIMEOUT_SECONDS", "600")
    monkeypatch.setenv("RATE_LIMIT_SECONDS", "0")
    monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example, https://b.example")

    settings = load_settings()
    assert settings.verify_token == "abc"
    assert settings.llm_provider == "gemini"
    assert settings.history_max_turns == 6
    assert settings.session_timeout_seconds == 600
    assert settings.rate_limit_seconds == 0
    assert settings.allowed_origins == ["https://a.example", "https://b.example"]
