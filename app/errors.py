from typing import Optional


class RelayError(Exception):
    """
    中继服务异常基类。
    """


class AuthError(RelayError):
    """
    Webhook 订阅校验失败（verify_token 不匹配或缺少 hub.mode）。

    路由层映射为 403，响应体为空。
    """


class MalformedPayloadError(RelayError):
    """
    Webhook 请求体不是预期的 JSON 结构。

    路由层映射为 500，响应体为 "ERROR"。
    """


class UpstreamError(RelayError):
    """
    外部服务（LLM 提供方或 Graph API）返回非成功状态，或响应体无法解析/为空。

    属性：
        status: HTTP 状态码（传输层错误时为 None）
        body: 响应体文本（可能被截断）
    """

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (status={self.status})"
        return base


class DeliveryError(UpstreamError):
    """
    向 Messenger 平台发送消息或动作失败。
    """
