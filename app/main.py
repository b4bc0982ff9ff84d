import asyncio
import contextlib
import logging
import time
from typing import Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from app.config import Settings, load_settings
from app.errors import AuthError, MalformedPayloadError
from app.services.completion_client import CompletionClient, create_completion_client
from app.services.live_data import LiveDataService
from app.services.messenger_client import MessengerClient
from app.services.rate_limiter import RateLimiter
from app.services.relay import Relay
from app.services.session_store import SessionStore
from app.services.webhook import MessageDeduplicator, parse_events, verify_subscription
from app.utils.logger import log_json, setup_logger


logger = setup_logger()

ACK_BODY = "EVENT_RECEIVED"


async def sweep_loop(store: SessionStore, limiter: RateLimiter, interval_seconds: float) -> None:
    """
    后台清理任务：按固定间隔清除空闲超时的会话与过期的限流记录。
    """
    while True:
        await asyncio.sleep(interval_seconds)
        now = time.time()
        removed = store.sweep(now)
        limiter.sweep(now)
        if removed:
            log_json(logger, logging.INFO, "session.sweep", removed=removed, remaining=len(store))


def create_app(
    settings: Optional[Settings] = None,
    completion_client: Optional[CompletionClient] = None,
    messenger: Optional[MessengerClient] = None,
    live_data: Optional[LiveDataService] = None,
) -> FastAPI:
    """
    创建 FastAPI 应用并组装依赖。

    输入：
        settings: 服务配置（为空时从环境变量加载）
        completion_client / messenger / live_data: 可注入的外部客户端（测试用）

    关键逻辑：
        - 会话存储、限流器、去重器作为注册表挂在 app.state 上，由路由与 Relay 共享；
        - lifespan 中启动清理任务，关闭时取消任务并释放 HTTP 连接；
        - POST /webhook 解析后立即确认，同一批事件在响应之后由一个后台任务并发处理。
    """
    settings = settings or load_settings()
    http_client = httpx.AsyncClient(timeout=10)

    store = SessionStore(max_turns=settings.history_max_turns, timeout_seconds=settings.session_timeout_seconds)
    limiter = RateLimiter(min_interval_seconds=settings.rate_limit_seconds)
    completion = completion_client or create_completion_client(settings)
    messenger = messenger or MessengerClient(
        access_token=settings.page_access_token,
        api_version=settings.graph_api_version,
        max_message_length=settings.max_message_length,
        chunk_delay_seconds=settings.chunk_delay_seconds,
        use_mock=settings.use_mock,
        http_client=http_client,
    )
    if live_data is None:
        live_data = LiveDataService(
            http_client=http_client,
            weather_api_key=settings.weather_api_key,
            sports_api_key=settings.sports_api_key,
            enabled=settings.live_data_enabled and not settings.use_mock,
        )
    relay = Relay(
        store=store,
        completion=completion,
        messenger=messenger,
        limiter=limiter,
        live_data=live_data,
        timezone=settings.display_timezone,
        typing_refresh_seconds=settings.typing_refresh_seconds,
    )

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        sweeper = asyncio.create_task(sweep_loop(store, limiter, settings.sweep_interval_seconds))
        log_json(logger, logging.INFO, "app.startup", provider=completion.provider, mock=messenger.use_mock)
        try:
            yield
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await completion.aclose()
            await messenger.aclose()
            await live_data.aclose()
            if not http_client.is_closed:
                await http_client.aclose()
            log_json(logger, logging.INFO, "app.shutdown")

    app = FastAPI(title="Messenger AI Relay", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.limiter = limiter
    app.state.dedup = MessageDeduplicator()
    app.state.relay = relay
    app.state.started_at = time.time()

    @app.exception_handler(AuthError)
    async def on_auth_error(request: Request, exc: AuthError):
        log_json(logger, logging.WARNING, "webhook.verify.rejected", client=request.client.host if request.client else None)
        return Response(status_code=403)

    @app.exception_handler(MalformedPayloadError)
    async def on_malformed_payload(request: Request, exc: MalformedPayloadError):
        log_json(logger, logging.ERROR, "webhook.payload.malformed", error=str(exc))
        return PlainTextResponse("ERROR", status_code=500)

    @app.get("/")
    def index(request: Request):
        """
        状态页：纯文本，包含当前内存中的会话数。
        """
        sessions = len(request.app.state.store)
        return PlainTextResponse(f"🤖 Messenger AI Relay is running | active sessions: {sessions}")

    @app.get("/stats")
    def stats(request: Request):
        state = request.app.state
        return {
            "status": "ok",
            "provider": state.relay.completion.provider,
            **state.store.stats(),
            "rateLimited": state.limiter.dropped,
            "uptimeSeconds": int(time.time() - state.started_at),
        }

    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}

    @app.get("/webhook")
    def webhook_verify(request: Request):
        """
        订阅校验：verify_token 匹配时原样返回 hub.challenge，否则 403 空响应。
        """
        params = request.query_params
        challenge = verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
            request.app.state.settings.verify_token,
        )
        log_json(logger, logging.INFO, "webhook.verified")
        return PlainTextResponse(challenge)

    @app.post("/webhook")
    async def webhook_receive(request: Request, background_tasks: BackgroundTasks):
        """
        事件投递入口。

        关键逻辑：
            - 请求体不是 JSON 或结构不符 → 500 "ERROR"；
            - 回声与主页自身事件在解析阶段丢弃；重复 mid 丢弃；
            - 其余事件作为一个后台批次并发处理，立即返回 "EVENT_RECEIVED"。
        """
        try:
            body = await request.json()
        except ValueError as e:
            raise MalformedPayloadError("webhook body is not valid JSON") from e
        state = request.app.state
        events = parse_events(body, state.settings.page_id)
        accepted = []
        for event in events:
            if state.dedup.seen(event.mid):
                log_json(logger, logging.INFO, "webhook.duplicate", userId=event.user_id, mid=event.mid)
                continue
            accepted.append(event)
        if accepted:
            background_tasks.add_task(state.relay.handle_batch, accepted)
        log_json(logger, logging.INFO, "webhook.received", events=len(events), accepted=len(accepted))
        return PlainTextResponse(ACK_BODY)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
