import asyncio
import logging
import time
from typing import Optional, Sequence

from app.errors import DeliveryError, UpstreamError
from app.services import prompts
from app.services.completion_client import CompletionClient
from app.services.live_data import LiveDataService
from app.services.messenger_client import MessengerClient
from app.services.rate_limiter import RateLimiter
from app.services.session_store import ASSISTANT, USER, SessionStore
from app.types import InboundEvent
from app.utils.logger import LOGGER_NAME, build_preview, get_content_log_config, log_json, write_user_log
from app.utils.validation import is_valid_message


logger = logging.getLogger(LOGGER_NAME)


class Relay:
    """
    单条入站事件的处理流程：限流 → 命令 → 校验 → 调用模型 → 回发。

    依赖全部通过构造函数注入（会话与限流注册表由应用持有），便于测试替换。

    参数：
        store: 会话存储
        completion: 补全客户端
        messenger: Messenger 外发客户端
        limiter: 限流器（可空，空则不限流）
        live_data: 实时数据服务（可空）
        timezone: 系统提示词的显示时区
        typing_refresh_seconds: 打字指示器刷新间隔
    """

    def __init__(
        self,
        store: SessionStore,
        completion: CompletionClient,
        messenger: MessengerClient,
        limiter: Optional[RateLimiter] = None,
        live_data: Optional[LiveDataService] = None,
        timezone: str = "Asia/Baghdad",
        typing_refresh_seconds: float = 15.0,
    ):
        self.store = store
        self.completion = completion
        self.messenger = messenger
        self.limiter = limiter
        self.live_data = live_data
        self.timezone = timezone
        self.typing_refresh_seconds = typing_refresh_seconds

    async def handle_event(self, event: InboundEvent) -> None:
        """
        处理一条归一化事件。作为后台任务运行，任何异常都不会冒泡到 webhook 响应。
        """
        try:
            if event.kind == "postback":
                await self.handle_postback(event.user_id, event.payload)
            elif event.kind == "text" and event.text:
                await self.handle_text(event.user_id, event.text)
        except DeliveryError as e:
            # 命令回复/按钮回复发送失败：只记录
            log_json(logger, logging.ERROR, "relay.delivery.failed", userId=event.user_id, kind=event.kind, error=str(e), status=e.status)
        except Exception as e:
            # 兜底：记录后对文本消息尽力致歉，同一批次的其他事件照常处理
            log_json(
                logger, logging.ERROR, "relay.event.failed",
                userId=event.user_id, kind=event.kind, error=f"{type(e).__name__}: {e}",
            )
            if event.kind == "text":
                await self._send_apology(event.user_id)

    async def handle_batch(self, events: Sequence[InboundEvent]) -> None:
        """
        并发处理同一次投递中的多条事件，一个用户的慢调用不阻塞其他用户。
        """
        await asyncio.gather(*(self.handle_event(event) for event in events))

    async def handle_postback(self, user_id: str, payload: Optional[str]) -> None:
        log_json(logger, logging.INFO, "relay.postback", userId=user_id, payload=payload)
        await self.messenger.mark_seen(user_id)
        text, quick_replies = prompts.postback_response(payload)
        await self.messenger.send_text(user_id, text, quick_replies)

    async def handle_text(self, user_id: str, text: str) -> None:
        if self.limiter is not None and not self.limiter.allow(user_id):
            log_json(logger, logging.INFO, "relay.rate_limited", userId=user_id)
            return

        if prompts.is_reset_command(text):
            self.store.clear(user_id)
            log_json(logger, logging.INFO, "relay.session.reset", userId=user_id)
            await self.messenger.send_text(user_id, prompts.RESET_TEXT, prompts.RESET_REPLIES)
            return

        if not is_valid_message(text):
            log_json(logger, logging.INFO, "relay.input.invalid", userId=user_id, len=len(text))
            await self.messenger.send_text(user_id, prompts.INVALID_INPUT_TEXT, prompts.INVALID_INPUT_REPLIES)
            return

        cfg = get_content_log_config()
        if cfg["include_input"]:
            pv = build_preview(text, cfg["max_chars"], cfg["redact"])
            log_json(logger, logging.INFO, "relay.input.preview", userId=user_id, **pv)
            write_user_log(user_id, "INFO", "relay.input.preview", pv)

        await self.messenger.mark_seen(user_id)
        started = time.monotonic()
        try:
            async with self.messenger.typing(user_id, self.typing_refresh_seconds):
                reply = await self._complete(user_id, text)
            chunks = await self.messenger.deliver(user_id, reply, prompts.FOLLOW_UP_REPLIES)
        except UpstreamError as e:
            log_json(
                logger, logging.ERROR, "relay.upstream.failed",
                userId=user_id, error=str(e), status=e.status, body=e.body,
            )
            write_user_log(user_id, "ERROR", "relay.upstream.failed", {"error": str(e), "status": e.status})
            await self._send_apology(user_id)
            return

        elapsed_ms = int((time.monotonic() - started) * 1000)
        log_json(logger, logging.INFO, "relay.reply.sent", userId=user_id, chunks=chunks, len=len(reply), elapsedMs=elapsed_ms)
        if cfg["include_output"]:
            pv = build_preview(reply, cfg["max_chars"], cfg["redact"])
            log_json(logger, logging.INFO, "relay.output.preview", userId=user_id, **pv)
            write_user_log(user_id, "INFO", "relay.output.preview", pv)

    async def _complete(self, user_id: str, text: str) -> str:
        live_context = await self.live_data.gather(text) if self.live_data is not None else None
        history = self.store.history(user_id)
        self.store.append(user_id, USER, text)
        system_prompt = prompts.build_system_prompt(timezone=self.timezone)
        reply = await self.completion.complete(system_prompt, history, text, live_context)
        self.store.append(user_id, ASSISTANT, reply)
        return reply

    async def _send_apology(self, user_id: str) -> None:
        try:
            await self.messenger.send_text(user_id, prompts.APOLOGY_TEXT, prompts.APOLOGY_REPLIES)
        except DeliveryError as e:
            log_json(logger, logging.ERROR, "relay.apology.failed", userId=user_id, error=str(e), status=e.status)
