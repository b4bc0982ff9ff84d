import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from app.errors import DeliveryError
from app.types import QuickReplyOption
from app.utils.logger import LOGGER_NAME, log_json
from app.utils.segmenter import split_message


logger = logging.getLogger(LOGGER_NAME)

GRAPH_BASE_URL = "https://graph.facebook.com"
TYPING_ON = "typing_on"
TYPING_OFF = "typing_off"
MARK_SEEN = "mark_seen"
SENDER_ACTIONS = (TYPING_ON, TYPING_OFF, MARK_SEEN)


class MessengerClient:
    """
    Messenger 外发客户端：通过 Graph API `me/messages` 发送文本、快捷回复与发送者动作。

    参数：
        access_token: 主页访问令牌（以 access_token 查询参数携带）
        api_version: Graph API 版本，默认 v18.0
        max_message_length: 单条消息最大字符数，超出后分段发送
        chunk_delay_seconds: 分段之间的停顿（模拟打字、避免平台限流）
        use_mock: 为 True 时不发 HTTP，只记录到 outbox
        http_client: 可注入的 httpx.AsyncClient（测试用 MockTransport）

    HTTP 协议约定：
        - POST {base}/{version}/me/messages?access_token=...
        - 文本：{recipient: {id}, message: {text, quick_replies?}}
        - 动作：{recipient: {id}, sender_action: typing_on|typing_off|mark_seen}
        - 非 2xx 或传输失败抛出 DeliveryError。
    """

    def __init__(
        self,
        access_token: str = "",
        api_version: str = "v18.0",
        max_message_length: int = 2000,
        chunk_delay_seconds: float = 0.8,
        use_mock: bool = False,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: str = GRAPH_BASE_URL,
    ):
        self.access_token = access_token
        self.url = f"{base_url.rstrip('/')}/{api_version}/me/messages"
        self.max_message_length = max_message_length
        self.chunk_delay_seconds = chunk_delay_seconds
        self.use_mock = use_mock or not access_token
        self.outbox: List[Dict[str, Any]] = []
        self._client = http_client or httpx.AsyncClient(timeout=10)

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.use_mock:
            self.outbox.append(payload)
            log_json(logger, logging.DEBUG, "messenger.mock.send", payload=payload)
            return {"recipient_id": payload["recipient"]["id"], "mock": True}
        try:
            resp = await self._client.post(self.url, params={"access_token": self.access_token}, json=payload)
        except httpx.HTTPError as e:
            raise DeliveryError(f"messenger request failed: {e}") from e
        if resp.status_code >= 400:
            raise DeliveryError("messenger returned an error", status=resp.status_code, body=resp.text[:500])
        try:
            return resp.json()
        except ValueError:
            return {}

    async def send_text(
        self,
        recipient_id: str,
        text: str,
        quick_replies: Optional[Sequence[QuickReplyOption]] = None,
    ) -> Dict[str, Any]:
        message: Dict[str, Any] = {"text": text}
        if quick_replies:
            message["quick_replies"] = [
                {"content_type": "text", "title": qr.title, "payload": qr.payload} for qr in quick_replies
            ]
        return await self._post({"recipient": {"id": recipient_id}, "message": message})

    async def send_action(self, recipient_id: str, action: str) -> Dict[str, Any]:
        if action not in SENDER_ACTIONS:
            raise ValueError(f"unknown sender action: {action!r}")
        return await self._post({"recipient": {"id": recipient_id}, "sender_action": action})

    async def _best_effort_action(self, recipient_id: str, action: str) -> None:
        try:
            await self.send_action(recipient_id, action)
        except DeliveryError as e:
            log_json(logger, logging.DEBUG, "messenger.action.failed", userId=recipient_id, action=action, error=str(e))

    async def mark_seen(self, recipient_id: str) -> None:
        await self._best_effort_action(recipient_id, MARK_SEEN)

    async def set_typing(self, recipient_id: str, on: bool) -> None:
        await self._best_effort_action(recipient_id, TYPING_ON if on else TYPING_OFF)

    async def deliver(
        self,
        recipient_id: str,
        text: str,
        quick_replies: Optional[Sequence[QuickReplyOption]] = None,
    ) -> int:
        """
        发送一条（可能很长的）回复。

        输出：
            int：实际发送的消息段数。

        关键逻辑：
            - 按 max_message_length 分段，段与段之间 sleep chunk_delay_seconds；
            - 快捷回复只挂在最后一段；
            - 任一段失败即抛出 DeliveryError，后续段不再发送。
        """
        chunks = split_message(text, self.max_message_length)
        for i, chunk in enumerate(chunks):
            if i > 0 and self.chunk_delay_seconds > 0:
                await asyncio.sleep(self.chunk_delay_seconds)
            is_last = i == len(chunks) - 1
            await self.send_text(recipient_id, chunk, quick_replies if is_last else None)
        return len(chunks)

    def typing(self, recipient_id: str, refresh_seconds: float = 15.0) -> "TypingIndicator":
        return TypingIndicator(self, recipient_id, refresh_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()


class TypingIndicator:
    """
    打字指示器：进入时打开并按间隔刷新，退出时取消刷新任务并关闭。

    说明：
        - 刷新任务归属于创建它的请求，async with 结束（包括异常）时一定被取消；
        - 所有动作都是尽力而为，失败不影响消息发送。
    """

    def __init__(self, client: MessengerClient, recipient_id: str, refresh_seconds: float = 15.0):
        self.client = client
        self.recipient_id = recipient_id
        self.refresh_seconds = refresh_seconds
        self._task: Optional["asyncio.Task[None]"] = None

    async def _refresh(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_seconds)
            await self.client.set_typing(self.recipient_id, True)

    async def __aenter__(self) -> "TypingIndicator":
        await self.client.set_typing(self.recipient_id, True)
        if self.refresh_seconds > 0:
            self._task = asyncio.create_task(self._refresh())
        return self

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
        await self.client.set_typing(self.recipient_id, False)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()
