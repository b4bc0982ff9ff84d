from typing import List, Optional

from pydantic import BaseModel, Field


class Turn(BaseModel):
    """
    会话中的一条消息。

    字段说明：
        role: "user" 或 "assistant"
        text: 消息文本
        created_at: 写入时间戳（秒）
    """

    role: str
    text: str
    created_at: float


class QuickReplyOption(BaseModel):
    """
    外发快捷回复按钮（标题 + 回传 payload）。
    """

    title: str
    payload: str


# ---- Webhook 入站结构（仅声明用到的字段，其余字段忽略） ----


class Sender(BaseModel):
    id: str


class QuickReplyPayload(BaseModel):
    payload: str


class Message(BaseModel):
    mid: Optional[str] = None
    text: Optional[str] = None
    is_echo: bool = False
    quick_reply: Optional[QuickReplyPayload] = None


class Postback(BaseModel):
    payload: Optional[str] = None
    title: Optional[str] = None


class MessagingEvent(BaseModel):
    sender: Optional[Sender] = None
    message: Optional[Message] = None
    postback: Optional[Postback] = None


class Entry(BaseModel):
    id: Optional[str] = None
    messaging: List[MessagingEvent] = Field(default_factory=list)


class WebhookBody(BaseModel):
    """
    POST /webhook 请求体模型：{ object: "page", entry: [ { id, messaging: [...] } ] }。
    """

    object: str
    entry: List[Entry] = Field(default_factory=list)


class InboundEvent(BaseModel):
    """
    归一化后的入站事件。

    字段说明：
        user_id: 发送者 ID
        kind: "text"（普通文本）或 "postback"（按钮/快捷回复）
        text: 文本内容（kind=text 时）
        payload: 按钮回传值（kind=postback 时）
        mid: 平台消息 ID（可空，用于去重）
    """

    user_id: str
    kind: str
    text: Optional[str] = None
    payload: Optional[str] = None
    mid: Optional[str] = None
