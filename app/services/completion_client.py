import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from app.config import Settings
from app.errors import UpstreamError
from app.services.prompts import LIVE_DATA_HEADING
from app.types import Turn
from app.utils.logger import LOGGER_NAME, log_json


logger = logging.getLogger(LOGGER_NAME)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
OPENROUTER_HEADERS = {
    "HTTP-Referer": "https://messenger-ai-relay.local",
    "X-Title": "Messenger AI Bot",
}
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
ERROR_BODY_MAX_CHARS = 500


def build_messages(
    system_text: Optional[str],
    history: Sequence[Turn],
    user_input: str,
    live_context: Optional[str] = None,
) -> List[Dict[str, str]]:
    """
    构建 Chat Completions 风格的消息数组。

    输入：
        system_text: 系统提示词文本（可为空）
        history: 历史消息（按时间顺序）
        user_input: 当前用户输入文本
        live_context: 实时数据文本块（天气/比分，可为空）

    输出：
        List[dict]: system（若有）、历史与当前 user 消息，每条为 {role, content}。

    关键逻辑：
        - 实时数据追加在系统提示词末尾，作为指令的一部分而不是用户消息。
    """
    messages: List[Dict[str, str]] = []
    system = system_text or ""
    if live_context:
        system = f"{system}\n\n{LIVE_DATA_HEADING}\n{live_context}".strip()
    if system:
        messages.append({"role": "system", "content": system})
    messages.extend({"role": turn.role, "content": turn.text} for turn in history)
    messages.append({"role": "user", "content": user_input})
    return messages


class CompletionClient:
    """
    补全客户端基类。

    方法：
        complete(system_prompt, history, user_text, live_context): 返回模型回复文本
        aclose(): 释放底层连接

    失败统一抛出 UpstreamError（携带状态码与响应体）。
    """

    provider = "base"

    async def complete(
        self,
        system_prompt: str,
        history: Sequence[Turn],
        user_text: str,
        live_context: Optional[str] = None,
    ) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class MockCompletionClient(CompletionClient):
    """
    模拟补全客户端，便于在无 API Key 环境下本地验证整条链路。

    属性：
        calls: 每次调用收到的消息数组
    """

    provider = "mock"

    def __init__(self, reply_text: str = "This is a mock reply for local testing."):
        self.reply_text = reply_text
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, system_prompt, history, user_text, live_context=None) -> str:
        self.calls.append(build_messages(system_prompt, history, user_text, live_context))
        return self.reply_text


class OpenRouterClient(CompletionClient):
    """
    OpenRouter 客户端（OpenAI 兼容接口），使用官方 openai SDK 的 AsyncOpenAI。

    关键逻辑：
        - base_url 指向 OpenRouter，附带 HTTP-Referer / X-Title 头；
        - max_retries=0：失败不重试，由上层发送一次致歉；
        - SDK 异常统一转换为 UpstreamError。
    """

    provider = "openrouter"

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1500,
        timeout: float = 60.0,
        base_url: str = OPENROUTER_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=0,
            default_headers=OPENROUTER_HEADERS,
            http_client=http_client,
        )

    async def complete(self, system_prompt, history, user_text, live_context=None) -> str:
        messages = build_messages(system_prompt, history, user_text, live_context)
        log_json(logger, logging.DEBUG, "llm.request", provider=self.provider, model=self.model, messages=len(messages))
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APIStatusError as e:
            raise UpstreamError(
                f"{self.provider} returned an error",
                status=e.status_code,
                body=e.response.text[:ERROR_BODY_MAX_CHARS],
            ) from e
        except openai.APIError as e:
            # 连接失败、超时、响应体无法解析
            raise UpstreamError(f"{self.provider} request failed: {e}") from e

        text = ""
        if resp.choices and resp.choices[0].message:
            text = (resp.choices[0].message.content or "").strip()
        if not text:
            raise UpstreamError(f"{self.provider} returned an empty reply", status=200)
        return text

    async def aclose(self) -> None:
        await self._client.close()


class GeminiClient(CompletionClient):
    """
    Google Gemini 客户端（generateContent REST 接口，httpx 直连）。

    请求体：
        system_instruction: {parts: [{text}]}
        contents: [{role: user|model, parts: [{text}]}]
        generationConfig: {temperature, maxOutputTokens}

    回复文本位于 candidates[0].content.parts[*].text。
    """

    provider = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 1500,
        timeout: float = 60.0,
        base_url: str = GEMINI_BASE_URL,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def build_payload(self, system_prompt, history, user_text, live_context=None) -> Dict[str, Any]:
        messages = build_messages(system_prompt, history, user_text, live_context)
        contents = []
        system = None
        for m in messages:
            if m["role"] == "system":
                system = m["content"]
                continue
            role = "model" if m["role"] == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": m["content"]}]})
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": self.temperature, "maxOutputTokens": self.max_tokens},
        }
        if system:
            payload["system_instruction"] = {"parts": [{"text": system}]}
        return payload

    async def complete(self, system_prompt, history, user_text, live_context=None) -> str:
        payload = self.build_payload(system_prompt, history, user_text, live_context)
        url = f"{self.base_url}/models/{self.model}:generateContent"
        log_json(logger, logging.DEBUG, "llm.request", provider=self.provider, model=self.model, messages=len(payload["contents"]))
        try:
            resp = await self._client.post(url, params={"key": self.api_key}, json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(f"{self.provider} request failed: {e}") from e
        if resp.status_code >= 400:
            raise UpstreamError(
                f"{self.provider} returned an error",
                status=resp.status_code,
                body=resp.text[:ERROR_BODY_MAX_CHARS],
            )
        try:
            data = resp.json()
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(p.get("text", "") for p in parts if isinstance(p, dict)).strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamError(
                f"{self.provider} returned an unexpected body",
                status=resp.status_code,
                body=resp.text[:ERROR_BODY_MAX_CHARS],
            ) from e
        if not text:
            raise UpstreamError(f"{self.provider} returned an empty reply", status=resp.status_code)
        return text

    async def aclose(self) -> None:
        await self._client.aclose()


def create_completion_client(settings: Settings, http_client: Optional[httpx.AsyncClient] = None) -> CompletionClient:
    """
    按配置选择补全提供方。

    关键逻辑：
        - USE_MOCK=1 或 LLM_PROVIDER=mock 时返回模拟客户端；
        - 所选提供方缺少 API Key 时同样退回模拟客户端并记录警告。
    """
    provider = settings.llm_provider
    if settings.use_mock or provider == "mock":
        return MockCompletionClient()
    if provider == "gemini":
        if not settings.gemini_api_key:
            log_json(logger, logging.WARNING, "llm.provider.no_key", provider=provider)
            return MockCompletionClient()
        return GeminiClient(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_seconds,
            http_client=http_client,
        )
    if provider == "openrouter":
        if not settings.openrouter_api_key:
            log_json(logger, logging.WARNING, "llm.provider.no_key", provider=provider)
            return MockCompletionClient()
        return OpenRouterClient(
            api_key=settings.openrouter_api_key,
            model=settings.openrouter_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout=settings.llm_timeout_seconds,
            http_client=http_client,
        )
    raise ValueError(f"unknown LLM_PROVIDER: {provider!r}")
