import os
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


DEFAULT_VERIFY_TOKEN = "my_secret_verify_token_12345"


class Settings(BaseModel):
    """
    服务配置，全部来自环境变量（可由 .env 提供）。

    字段说明：
        page_access_token: Facebook 主页访问令牌（为空时外发走模拟模式）
        verify_token: Webhook 订阅校验口令，未配置时使用内置默认值
        page_id: 主页 ID（可选，用于过滤自身发出的事件）
        llm_provider: openrouter | gemini | mock
        history_max_turns: 每个用户保留的最近消息条数（原始条数，非轮数）
        session_timeout_seconds: 会话空闲超时
        rate_limit_seconds: 同一用户两条消息的最小间隔，0 表示关闭
    """

    page_access_token: str = ""
    verify_token: str = DEFAULT_VERIFY_TOKEN
    page_id: Optional[str] = None
    graph_api_version: str = "v18.0"

    llm_provider: str = "openrouter"
    openrouter_api_key: str = ""
    openrouter_model: str = "tngtech/deepseek-r1t2-chimera:free"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.0-flash"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1500
    llm_timeout_seconds: float = 60.0

    weather_api_key: str = ""
    sports_api_key: str = "3"
    live_data_enabled: bool = True
    display_timezone: str = "Asia/Baghdad"

    history_max_turns: int = Field(default=10, ge=1)
    session_timeout_seconds: float = 30 * 60
    sweep_interval_seconds: float = 5 * 60
    rate_limit_seconds: float = 2.0

    max_message_length: int = Field(default=2000, ge=1)
    chunk_delay_seconds: float = 0.8
    typing_refresh_seconds: float = 15.0

    use_mock: bool = False
    port: int = 3000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    """
    从环境变量构建 Settings。

    关键逻辑：
        - 先调用 load_dotenv()，让项目根目录 .env 中的值可见（不覆盖已有进程环境变量）；
        - LLM_PROVIDER 未设置时：USE_MOCK=1 用 mock，否则按可用密钥选择 openrouter / gemini；
        - 数值型变量交给 pydantic 校验转换。
    """
    load_dotenv()
    env = os.environ
    use_mock = _flag("USE_MOCK")

    provider = env.get("LLM_PROVIDER", "").strip().lower()
    if not provider:
        if use_mock:
            provider = "mock"
        elif env.get("GEMINI_API_KEY") and not env.get("OPENROUTER_API_KEY"):
            provider = "gemini"
        else:
            provider = "openrouter"

    values = {
        "page_access_token": env.get("PAGE_ACCESS_TOKEN", ""),
        "verify_token": env.get("VERIFY_TOKEN") or DEFAULT_VERIFY_TOKEN,
        "page_id": env.get("PAGE_ID") or None,
        "llm_provider": provider,
        "openrouter_api_key": env.get("OPENROUTER_API_KEY", ""),
        "gemini_api_key": env.get("GEMINI_API_KEY", ""),
        "weather_api_key": env.get("WEATHER_API_KEY", ""),
        "live_data_enabled": _flag("LIVE_DATA_ENABLED", "1"),
        "use_mock": use_mock,
        "allowed_origins": [o.strip() for o in env.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()],
    }
    # 其余字段：环境变量名即字段名大写，存在时才覆盖默认值
    for name in (
        "graph_api_version",
        "openrouter_model",
        "gemini_model",
        "llm_temperature",
        "llm_max_tokens",
        "llm_timeout_seconds",
        "sports_api_key",
        "display_timezone",
        "history_max_turns",
        "session_timeout_seconds",
        "sweep_interval_seconds",
        "rate_limit_seconds",
        "max_message_length",
        "chunk_delay_seconds",
        "typing_refresh_seconds",
        "port",
    ):
        raw = env.get(name.upper())
        if raw not in (None, ""):
            values[name] = raw
    return Settings(**values)
