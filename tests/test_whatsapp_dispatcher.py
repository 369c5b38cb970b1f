import json

import httpx
import pytest

from app.errors import Unavailable
from services.whatsapp_gateway.outbound import WhatsAppDispatcher


def _dispatcher(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return WhatsAppDispatcher(
        api_url="https://graph.example.test/v19.0/",
        phone_id="12345",
        api_key="secret",
        client=client,
    )


def test_challenge_is_sent_as_template():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"messages": [{"id": "wamid.abc"}]})

    dispatcher = _dispatcher(handler)

    assert dispatcher.send_challenge("+254700000001", "482913") == "wamid.abc"

    (request,) = seen
    assert str(request.url) == "https://graph.example.test/v19.0/12345/messages"
    assert request.headers["authorization"] == "Bearer secret"
    body = json.loads(request.content)
    assert body["to"] == "254700000001"
    assert body["template"]["name"] == "otp_verification"
    assert body["template"]["components"][0]["parameters"][0]["text"] == "482913"
    assert dispatcher.deliveries[0].mode == "TEMPLATE"


def test_challenge_failure_is_retryable():
    dispatcher = _dispatcher(lambda request: httpx.Response(500, json={"error": "boom"}))

    with pytest.raises(Unavailable) as excinfo:
        dispatcher.send_challenge("+254700000001", "482913")
    assert excinfo.value.retryable
    assert dispatcher.deliveries == []


def test_freeform_failure_is_swallowed():
    def handler(request):
        raise httpx.ConnectError("offline", request=request)

    dispatcher = _dispatcher(handler)
    dispatcher.send_freeform("+254700000001", "Your consultation is starting")
    assert dispatcher.deliveries == []


def test_freeform_text_payload():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"messages": [{"id": "wamid.txt"}]})

    dispatcher = _dispatcher(handler)
    dispatcher.send_freeform("+254700000001", "Hello")

    assert seen == [{"messaging_product": "whatsapp", "to": "254700000001", "type": "text", "text": {"body": "Hello"}}]
    assert dispatcher.deliveries[0].message_id == "wamid.txt"
