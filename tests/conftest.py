import os
import sys

import pytest


def pytest_sessionstart(session):
    """
    在测试会话开始时，为 Python 解释器追加项目根目录到 sys.path。

    这样测试模块可以使用 `from app.main import create_app` 进行导入。
    """
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    if root not in sys.path:
        sys.path.insert(0, root)


@pytest.fixture(autouse=True)
def use_mock_env(monkeypatch):
    monkeypatch.setenv("USE_MOCK", "1")
    monkeypatch.delenv("PAGE_ACCESS_TOKEN", raising=False)


@pytest.fixture
def settings():
    from app.config import Settings

    return Settings(
        verify_token="secret-token",
        page_id="PAGE_1",
        use_mock=True,
        llm_provider="mock",
        chunk_delay_seconds=0,
        typing_refresh_seconds=0,
        live_data_enabled=False,
        rate_limit_seconds=2,
    )


@pytest.fixture
def mock_completion():
    from app.services.completion_client import MockCompletionClient

    return MockCompletionClient("Hi there! How can I help?")


@pytest.fixture
def messenger(settings):
    from app.services.messenger_client import MessengerClient

    return MessengerClient(use_mock=True, chunk_delay_seconds=0, max_message_length=settings.max_message_length)


@pytest.fixture
def make_client(settings, mock_completion, messenger):
    """
    返回一个工厂：按需覆盖依赖后创建 TestClient。
    """
    from fastapi.testclient import TestClient
    from app.main import create_app

    def factory(**overrides):
        kwargs = {
            "settings": settings,
            "completion_client": mock_completion,
            "messenger": messenger,
        }
        kwargs.update(overrides)
        return TestClient(create_app(**kwargs))

    return factory


def text_event(sender_id, text, mid, page_id="PAGE_1", **message_fields):
    return {
        "object": "page",
        "entry": [{
            "id": page_id,
            "time": 1700000000000,
            "messaging": [{
                "sender": {"id": sender_id},
                "recipient": {"id": page_id},
                "timestamp": 1700000000000,
                "message": {"mid": mid, "text": text, **message_fields},
            }],
        }],
    }


def sent_messages(outbox):
    return [p for p in outbox if "message" in p]


def sent_actions(outbox):
    return [p["sender_action"] for p in outbox if "sender_action" in p]
