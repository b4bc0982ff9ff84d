from collections import OrderedDict
from typing import Any, List, Optional

from pydantic import ValidationError

from app.errors import AuthError, MalformedPayloadError
from app.types import InboundEvent, WebhookBody


PAGE_OBJECT = "page"


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str], expected_token: str) -> str:
    """
    校验 Messenger 订阅请求。

    输入：
        mode / token / challenge: hub.mode、hub.verify_token、hub.challenge 查询参数
        expected_token: 配置的 VERIFY_TOKEN

    输出：
        str：原样返回 challenge。

    异常：
        AuthError：缺少 mode 或 token 不匹配。
    """
    if not mode or token != expected_token:
        raise AuthError("webhook verification failed")
    return challenge or ""


def parse_events(body: Any, page_id: Optional[str] = None) -> List[InboundEvent]:
    """
    将 webhook 请求体解析为归一化事件列表。

    输入：
        body: 已解码的 JSON
        page_id: 配置的主页 ID（可空；entry.id 同样视为主页 ID）

    输出：
        List[InboundEvent]

    关键逻辑：
        - 结构不符抛出 MalformedPayloadError；object 不是 "page" 时返回空列表；
        - is_echo 或 sender.id 等于主页 ID 的事件在此丢弃，防止回环；
        - 快捷回复点击优先视为 postback（即便同时带有 text）；
        - 既无文本也无 payload 的事件（已读回执、附件等）忽略。
    """
    try:
        parsed = WebhookBody.model_validate(body)
    except ValidationError as e:
        raise MalformedPayloadError(f"unexpected webhook body: {e.error_count()} validation error(s)") from e

    events: List[InboundEvent] = []
    if parsed.object != PAGE_OBJECT:
        return events

    for entry in parsed.entry:
        own_ids = {i for i in (entry.id, page_id) if i}
        for ev in entry.messaging:
            if ev.sender is None or ev.sender.id in own_ids:
                continue
            user_id = ev.sender.id
            message = ev.message
            if message is not None and message.is_echo:
                continue

            if ev.postback is not None and ev.postback.payload:
                events.append(InboundEvent(user_id=user_id, kind="postback", payload=ev.postback.payload))
            elif message is not None and message.quick_reply is not None:
                events.append(InboundEvent(
                    user_id=user_id, kind="postback", payload=message.quick_reply.payload, mid=message.mid,
                ))
            elif message is not None and message.text:
                events.append(InboundEvent(user_id=user_id, kind="text", text=message.text, mid=message.mid))
    return events


class MessageDeduplicator:
    """
    记录最近处理过的消息 ID（LRU），过滤平台重投递的同一条消息。
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, mid: Optional[str]) -> bool:
        """
        返回 True 表示该 mid 之前已出现过；否则记录并返回 False。无 mid 的事件不参与去重。
        """
        if not mid:
            return False
        if mid in self._seen:
            self._seen.move_to_end(mid)
            return True
        self._seen[mid] = None
        if len(self._seen) > self.maxsize:
            self._seen.popitem(last=False)
        return False

    def __len__(self) -> int:
        return len(self._seen)
