import asyncio
import time

import httpx

from app.services import prompts
from app.services.completion_client import GeminiClient, MockCompletionClient, OpenRouterClient
from conftest import sent_actions, sent_messages, text_event


def test_healthz(make_client):
    client = make_client()
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_webhook_verification_ok(make_client):
    client = make_client()
    resp = client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "secret-token", "hub.challenge": "CHALLENGE_ACCEPTED"},
    )
    assert resp.status_code == 200
    assert resp.text == "CHALLENGE_ACCEPTED"


def test_webhook_verification_wrong_token(make_client):
    client = make_client()
    resp = client.get(
        "/webhook",
        params={"hub.mode": "subscribe", "hub.verify_token": "wrong", "hub.challenge": "CHALLENGE_ACCEPTED"},
    )
    assert resp.status_code == 403
    assert resp.content == b""


def test_text_message_round_trip(make_client, mock_completion, messenger):
    client = make_client()
    resp = client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    assert resp.status_code == 200
    assert resp.text == "EVENT_RECEIVED"

    messages = sent_messages(messenger.outbox)
    assert len(messages) == 1
    assert messages[0]["recipient"] == {"id": "USER_1"}
    assert messages[0]["message"]["text"] == "Hi there! How can I help?"
    assert [qr["payload"] for qr in messages[0]["message"]["quick_replies"]] == ["CONTINUE", "MAIN_MENU", "HELP"]
    assert sent_actions(messenger.outbox) == ["mark_seen", "typing_on", "typing_off"]

    store = client.app.state.store
    assert [(t.role, t.text) for t in store.history("USER_1")] == [
        ("user", "Hello"),
        ("assistant", "Hi there! How can I help?"),
    ]
    # 系统提示词 + 当前用户消息
    assert mock_completion.calls[0][0]["role"] == "system"
    assert mock_completion.calls[0][-1] == {"role": "user", "content": "Hello"}


def test_history_is_sent_with_next_message(make_client, settings, mock_completion):
    client = make_client(settings=settings.model_copy(update={"rate_limit_seconds": 0}))
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    client.post("/webhook", json=text_event("USER_1", "And again", "m-2"))

    second_call = mock_completion.calls[1]
    assert [m["role"] for m in second_call] == ["system", "user", "assistant", "user"]
    assert second_call[1]["content"] == "Hello"


def test_rapid_duplicate_is_rate_limited(make_client, mock_completion):
    client = make_client()
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    resp = client.post("/webhook", json=text_event("USER_1", "Hello", "m-2"))
    assert resp.status_code == 200

    assert len(mock_completion.calls) == 1
    history = client.app.state.store.history("USER_1")
    assert [t.text for t in history if t.role == "user"] == ["Hello"]
    assert client.app.state.limiter.dropped == 1


def test_redelivered_mid_is_processed_once(make_client, settings, mock_completion):
    client = make_client(settings=settings.model_copy(update={"rate_limit_seconds": 0}))
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    assert len(mock_completion.calls) == 1


def test_echo_and_self_events_have_no_side_effects(make_client, mock_completion, messenger):
    client = make_client()
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1", is_echo=True))
    client.post("/webhook", json=text_event("PAGE_1", "Hello", "m-2"))

    assert messenger.outbox == []
    assert mock_completion.calls == []
    assert len(client.app.state.store) == 0


def test_malformed_body_returns_error(make_client):
    client = make_client()
    resp = client.post("/webhook", content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 500
    assert resp.text == "ERROR"

    resp = client.post("/webhook", json={"entry": []})
    assert resp.status_code == 500


def test_provider_failure_sends_single_apology(make_client, messenger):
    def handler(request):
        return httpx.Response(500, json={"error": {"message": "boom"}})

    failing = OpenRouterClient(
        api_key="test-key",
        model="test/model",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    client = make_client(completion_client=failing)
    resp = client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    assert resp.status_code == 200
    assert resp.text == "EVENT_RECEIVED"

    messages = sent_messages(messenger.outbox)
    assert [m["message"]["text"] for m in messages] == [prompts.APOLOGY_TEXT]
    assert sent_actions(messenger.outbox)[-1] == "typing_off"


def test_reset_command_clears_session(make_client, settings, mock_completion, messenger):
    client = make_client(settings=settings.model_copy(update={"rate_limit_seconds": 0}))
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    assert len(client.app.state.store.history("USER_1")) == 2

    client.post("/webhook", json=text_event("USER_1", "Reset", "m-2"))
    assert client.app.state.store.history("USER_1") == []
    assert sent_messages(messenger.outbox)[-1]["message"]["text"] == prompts.RESET_TEXT
    assert len(mock_completion.calls) == 1


def test_invalid_input_gets_hint_without_completion(make_client, mock_completion, messenger):
    client = make_client()
    client.post("/webhook", json=text_event("USER_1", "😀😀😀", "m-1"))
    assert mock_completion.calls == []
    assert sent_messages(messenger.outbox)[0]["message"]["text"] == prompts.INVALID_INPUT_TEXT
    assert len(client.app.state.store) == 0


def test_postback_sends_menu_reply(make_client, mock_completion, messenger):
    client = make_client()
    body = {
        "object": "page",
        "entry": [{"id": "PAGE_1", "messaging": [{"sender": {"id": "USER_1"}, "postback": {"payload": "HELP"}}]}],
    }
    client.post("/webhook", json=body)
    text, replies = prompts.POSTBACK_RESPONSES["HELP"]
    message = sent_messages(messenger.outbox)[0]["message"]
    assert message["text"] == text
    assert len(message["quick_replies"]) == len(replies)
    assert mock_completion.calls == []


def test_long_reply_is_chunked(make_client, messenger):
    long_reply = "\n\n".join(" ".join(["Quite a long sentence here."] * 20) for _ in range(9))
    client = make_client(completion_client=MockCompletionClient(long_reply))
    client.post("/webhook", json=text_event("USER_1", "Tell me a story", "m-1"))

    messages = sent_messages(messenger.outbox)
    assert len(messages) >= 3
    assert all(len(m["message"]["text"]) <= 2000 for m in messages)
    assert "quick_replies" in messages[-1]["message"]
    assert all("quick_replies" not in m["message"] for m in messages[:-1])


def test_status_and_stats(make_client):
    client = make_client()
    client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))

    resp = client.get("/")
    assert resp.status_code == 200
    assert "active sessions: 1" in resp.text

    stats = client.get("/stats").json()
    assert stats["sessions"] == 1
    assert stats["turns"] == 2
    assert stats["provider"] == "mock"
    assert stats["rateLimited"] == 0


def test_lifespan_starts_and_stops_sweeper(make_client):
    with make_client() as client:
        assert client.get("/healthz").status_code == 200


def _batch(*events):
    """
    同一次投递里包含多位用户的消息。
    """
    return {
        "object": "page",
        "entry": [{
            "id": "PAGE_1",
            "messaging": [
                {"sender": {"id": user_id}, "recipient": {"id": "PAGE_1"}, "message": {"mid": mid, "text": text}}
                for user_id, text, mid in events
            ],
        }],
    }


class SlowCompletion(MockCompletionClient):
    def __init__(self, delay):
        super().__init__("Done.")
        self.delay = delay
        self.spans = {}

    async def complete(self, system_prompt, history, user_text, live_context=None):
        started = time.monotonic()
        await asyncio.sleep(self.delay)
        self.spans[user_text] = (started, time.monotonic())
        return await super().complete(system_prompt, history, user_text, live_context)


def test_users_in_one_delivery_are_handled_concurrently(make_client, messenger):
    slow = SlowCompletion(0.3)
    client = make_client(completion_client=slow)
    resp = client.post("/webhook", json=_batch(("USER_1", "From one", "m-1"), ("USER_2", "From two", "m-2")))
    assert resp.status_code == 200

    first_start, first_end = slow.spans["From one"]
    second_start, second_end = slow.spans["From two"]
    assert second_start < first_end
    assert first_start < second_end
    recipients = sorted(m["recipient"]["id"] for m in sent_messages(messenger.outbox))
    assert recipients == ["USER_1", "USER_2"]


def test_bad_display_timezone_sends_apology(make_client, settings, mock_completion, messenger):
    client = make_client(settings=settings.model_copy(update={"display_timezone": "Not/AZone"}))
    resp = client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    assert resp.status_code == 200
    assert resp.text == "EVENT_RECEIVED"

    assert mock_completion.calls == []
    assert [m["message"]["text"] for m in sent_messages(messenger.outbox)] == [prompts.APOLOGY_TEXT]
    assert sent_actions(messenger.outbox)[-1] == "typing_off"


def test_unexpected_gemini_body_apologizes_to_every_user(make_client, messenger):
    def handler(request):
        return httpx.Response(200, json={"candidates": [{"content": {"parts": ["plain string part"]}}]})

    gemini = GeminiClient(api_key="k", model="m", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    client = make_client(completion_client=gemini)
    client.post("/webhook", json=_batch(("USER_1", "Hello", "m-1"), ("USER_2", "Hi there", "m-2")))

    messages = sent_messages(messenger.outbox)
    assert sorted(m["recipient"]["id"] for m in messages) == ["USER_1", "USER_2"]
    assert all(m["message"]["text"] == prompts.APOLOGY_TEXT for m in messages)


def test_unexpected_exception_sends_one_apology(make_client, messenger):
    class BrokenCompletion(MockCompletionClient):
        async def complete(self, system_prompt, history, user_text, live_context=None):
            raise RuntimeError("unexpected")

    client = make_client(completion_client=BrokenCompletion())
    resp = client.post("/webhook", json=text_event("USER_1", "Hello", "m-1"))
    assert resp.status_code == 200
    assert [m["message"]["text"] for m in sent_messages(messenger.outbox)] == [prompts.APOLOGY_TEXT]
