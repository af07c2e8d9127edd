import json

import httpx

from passgate.service import notifier as notifier_module
from passgate.service.notifier import INVITATION_TEMPLATE, HttpNotifier, LoggingNotifier

BASE_URL = "https://sender.internal/api"


def _notifier(handler) -> HttpNotifier:
    client = httpx.Client(base_url=BASE_URL + "/", transport=httpx.MockTransport(handler))
    return HttpNotifier(BASE_URL, client=client)


def test_http_notifier_posts_sender_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": "OK"})

    notifier = _notifier(handler)
    delivered = notifier.send(
        {"email": "no-reply@example.com", "secretCode": "abc"},
        "ada@example.com",
        INVITATION_TEMPLATE,
        {"link": "https://app.example.com/register/abc"},
    )

    assert delivered
    assert seen["url"] == f"{BASE_URL}/send"
    assert seen["body"] == {
        "srcData": {"email": "no-reply@example.com", "secretCode": "abc"},
        "dstEmail": "ada@example.com",
        "templateId": INVITATION_TEMPLATE,
        "options": {"link": "https://app.example.com/register/abc"},
    }


def test_http_notifier_non_200_is_failure():
    notifier = _notifier(lambda request: httpx.Response(502, json={"code": "UPSTREAM"}))
    assert not notifier.send({}, "ada@example.com", INVITATION_TEMPLATE)


def test_http_notifier_non_json_error_body():
    notifier = _notifier(lambda request: httpx.Response(500, text="oops"))
    assert not notifier.send({}, "ada@example.com", INVITATION_TEMPLATE)


def test_http_notifier_transport_error_is_failure():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    notifier = _notifier(handler)
    assert not notifier.send({}, "ada@example.com", INVITATION_TEMPLATE)


def test_logging_notifier_logs_link_and_keeps_nothing(monkeypatch):
    events = []

    class _Logger:
        def info(self, event, **kw):
            events.append((event, kw))

    monkeypatch.setattr(notifier_module, "logger", _Logger())
    notifier = LoggingNotifier()
    link = "https://app.example.com/register/abc"

    assert notifier.send({"secretCode": "abc"}, "ada@example.com", INVITATION_TEMPLATE, {"link": link})
    assert events == [
        (
            "notifier_dev_mode",
            {"to": "ad***@example.com", "template_id": INVITATION_TEMPLATE, "link": link},
        )
    ]
    assert not hasattr(notifier, "sent")
