import asyncio
import json

import httpx
import pytest

from app.errors import DeliveryError
from app.services.messenger_client import MessengerClient
from app.types import QuickReplyOption


def _recording_client(status=200):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(status, json={"recipient_id": "U1", "message_id": "m-1"})

    client = MessengerClient(
        access_token="page-token",
        chunk_delay_seconds=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return client, requests


def test_send_text_with_quick_replies():
    client, requests = _recording_client()
    asyncio.run(client.send_text("U1", "Hi", [QuickReplyOption(title="Help", payload="HELP")]))

    req = requests[0]
    assert req.url.path == "/v18.0/me/messages"
    assert req.url.params["access_token"] == "page-token"
    assert json.loads(req.content) == {
        "recipient": {"id": "U1"},
        "message": {"text": "Hi", "quick_replies": [{"content_type": "text", "title": "Help", "payload": "HELP"}]},
    }


def test_send_action_payload():
    client, requests = _recording_client()
    asyncio.run(client.send_action("U1", "typing_on"))
    assert json.loads(requests[0].content) == {"recipient": {"id": "U1"}, "sender_action": "typing_on"}
    with pytest.raises(ValueError):
        asyncio.run(client.send_action("U1", "dance"))


def test_error_status_raises_delivery_error():
    client, _ = _recording_client(status=400)
    with pytest.raises(DeliveryError) as exc:
        asyncio.run(client.send_text("U1", "Hi"))
    assert exc.value.status == 400


def test_typing_and_mark_seen_swallow_failures():
    client, requests = _recording_client(status=500)

    async def run():
        await client.mark_seen("U1")
        await client.set_typing("U1", True)
        await client.set_typing("U1", False)

    asyncio.run(run())
    assert len(requests) == 3


def test_deliver_splits_long_text_and_attaches_quick_replies_last():
    client, requests = _recording_client()
    text = "\n\n".join(" ".join(["Another fairly ordinary sentence."] * 15) for _ in range(10))
    replies = [QuickReplyOption(title="More", payload="CONTINUE")]

    count = asyncio.run(client.deliver("U1", text, replies))

    bodies = [json.loads(r.content) for r in requests]
    assert count == len(bodies) >= 3
    assert all(len(b["message"]["text"]) <= 2000 for b in bodies)
    assert "quick_replies" in bodies[-1]["message"]
    assert all("quick_replies" not in b["message"] for b in bodies[:-1])


def test_mock_mode_keeps_outbox_without_http():
    client = MessengerClient(access_token="")
    assert client.use_mock
    asyncio.run(client.send_text("U1", "Hi"))
    assert client.outbox == [{"recipient": {"id": "U1"}, "message": {"text": "Hi"}}]


def test_typing_indicator_refreshes_and_is_cancelled():
    client = MessengerClient(use_mock=True)

    async def run():
        indicator = client.typing("U1", refresh_seconds=0.01)
        async with indicator:
            await asyncio.sleep(0.05)
            assert indicator.active
        return indicator

    indicator = asyncio.run(run())
    actions = [p["sender_action"] for p in client.outbox]
    assert not indicator.active
    assert actions[0] == "typing_on"
    assert actions.count("typing_on") >= 2
    assert actions[-1] == "typing_off"


def test_typing_indicator_stops_on_error():
    client = MessengerClient(use_mock=True)

    async def run():
        indicator = client.typing("U1", refresh_seconds=0.01)
        with pytest.raises(RuntimeError):
            async with indicator:
                raise RuntimeError("provider exploded")
        return indicator

    indicator = asyncio.run(run())
    assert not indicator.active
    assert client.outbox[-1]["sender_action"] == "typing_off"
