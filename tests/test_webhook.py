import pytest

from app.errors import AuthError, MalformedPayloadError
from app.services.webhook import MessageDeduplicator, parse_events, verify_subscription
from conftest import text_event


def test_verify_subscription_echoes_challenge():
    assert verify_subscription("subscribe", "tok", "12345", "tok") == "12345"


@pytest.mark.parametrize("mode,token", [("subscribe", "wrong"), (None, "tok"), ("subscribe", None)])
def test_verify_subscription_rejects(mode, token):
    with pytest.raises(AuthError):
        verify_subscription(mode, token, "12345", "tok")


def test_parse_text_event():
    events = parse_events(text_event("USER_1", "Hello", "m-1"))
    assert len(events) == 1
    ev = events[0]
    assert (ev.user_id, ev.kind, ev.text, ev.mid) == ("USER_1", "text", "Hello", "m-1")


def test_parse_drops_echo_and_self_sent_events():
    echo = text_event("USER_1", "Hello", "m-1", is_echo=True)
    from_page = text_event("PAGE_1", "Hello", "m-2")
    from_configured_page = text_event("OTHER_PAGE", "Hello", "m-3", page_id="PAGE_2")
    assert parse_events(echo) == []
    assert parse_events(from_page) == []
    assert parse_events(from_configured_page, page_id="OTHER_PAGE") == []


def test_parse_postback_and_quick_reply():
    body = {
        "object": "page",
        "entry": [{
            "id": "PAGE_1",
            "messaging": [
                {"sender": {"id": "U1"}, "postback": {"title": "Get Started", "payload": "GET_STARTED"}},
                {"sender": {"id": "U2"}, "message": {"mid": "m-9", "text": "Help", "quick_reply": {"payload": "HELP"}}},
            ],
        }],
    }
    events = parse_events(body)
    assert [(e.user_id, e.kind, e.payload) for e in events] == [("U1", "postback", "GET_STARTED"), ("U2", "postback", "HELP")]


def test_parse_ignores_non_text_events_and_other_objects():
    body = {
        "object": "page",
        "entry": [{"id": "PAGE_1", "messaging": [
            {"sender": {"id": "U1"}, "read": {"watermark": 1}},
            {"sender": {"id": "U1"}, "message": {"mid": "m-1", "attachments": [{"type": "image"}]}},
        ]}],
    }
    assert parse_events(body) == []
    assert parse_events({"object": "instagram", "entry": []}) == []


@pytest.mark.parametrize("body", [[], "page", {"entry": []}, {"object": "page", "entry": "nope"}])
def test_parse_malformed_body(body):
    with pytest.raises(MalformedPayloadError):
        parse_events(body)


def test_deduplicator_is_bounded():
    dedup = MessageDeduplicator(maxsize=2)
    assert dedup.seen("a") is False
    assert dedup.seen("a") is True
    dedup.seen("b")
    dedup.seen("c")
    assert len(dedup) == 2
    assert dedup.seen("a") is False
    assert dedup.seen(None) is False
