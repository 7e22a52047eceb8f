import json

import httpx
import pytest

from notification_core.push_gateway import (
    PushGatewayClient,
    PushMessage,
    PushTicket,
    _normalize_results,
    is_permanent_failure,
)


def _client(handler) -> PushGatewayClient:
    return PushGatewayClient(
        "https://push.test/send",
        timeout=1.0,
        access_token="gw-token",
        transport=httpx.MockTransport(handler),
    )


def _messages(*tokens) -> list[PushMessage]:
    return [PushMessage(to=t, title="Hi", body="There", data={"k": "v"}) for t in tokens]


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"data": [{"status": "ok"}, {"status": "ok"}]}, [{"status": "ok"}, {"status": "ok"}]),
        ([{"status": "ok"}], [{"status": "ok"}]),
        ({"status": "ok", "id": "x"}, [{"status": "ok", "id": "x"}]),
        ({"data": {"status": "ok"}}, [{"status": "ok"}]),
        ("nonsense", []),
    ],
)
def test_normalize_results_shapes(body, expected):
    assert _normalize_results(body) == expected


@pytest.mark.parametrize(
    "message, permanent",
    [
        ("DeviceNotRegistered", True),
        ("InvalidCredentials", True),
        ("The push token has expired", True),
        ("MessageRateExceeded", False),
        ("", False),
        (None, False),
    ],
)
def test_is_permanent_failure(message, permanent):
    assert is_permanent_failure(message) is permanent


def test_ticket_checks_error_code_and_message():
    assert PushTicket(token="t", ok=False, message="boom", error_code="DeviceNotRegistered").permanent_failure
    assert not PushTicket(token="t", ok=True, message="invalid").permanent_failure


def test_send_batch_posts_one_request_and_correlates_by_position():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"data": [{"status": "ok", "id": "1"}, {"status": "error", "message": "DeviceNotRegistered"}]},
        )

    result = _client(handler).send_batch(_messages("tok-a", "tok-b"))

    assert len(seen) == 1
    request = seen[0]
    assert request.headers["Authorization"] == "Bearer gw-token"
    sent = json.loads(request.content)
    assert [m["to"] for m in sent] == ["tok-a", "tok-b"]
    assert sent[0]["data"] == {"k": "v"}
    assert [t.token for t in result.delivered] == ["tok-a"]
    assert [t.token for t in result.failed] == ["tok-b"]
    assert result.failed[0].permanent_failure
    assert result.transport_error is None


def test_missing_results_count_as_failures():
    result = _client(lambda request: httpx.Response(200, json=[{"status": "ok"}])).send_batch(
        _messages("tok-a", "tok-b", "tok-c")
    )

    assert len(result.delivered) == 1
    assert [t.message for t in result.failed] == ["missing result", "missing result"]
    assert not any(t.permanent_failure for t in result.failed)


def test_non_2xx_fails_whole_batch():
    result = _client(lambda request: httpx.Response(502, text="bad gateway")).send_batch(_messages("tok-a", "tok-b"))

    assert result.delivered == []
    assert len(result.failed) == 2
    assert result.transport_error.startswith("HTTP 502")


def test_timeout_fails_whole_batch():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    result = _client(handler).send_batch(_messages("tok-a"))

    assert len(result.failed) == 1
    assert result.transport_error.startswith("timeout")


def test_connection_error_fails_whole_batch():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    result = _client(handler).send_batch(_messages("tok-a"))

    assert result.transport_error.startswith("transport")


def test_undecodable_body_fails_whole_batch():
    result = _client(lambda request: httpx.Response(200, content=b"<html>oops</html>")).send_batch(_messages("tok-a"))

    assert result.transport_error == "undecodable response"
    assert len(result.failed) == 1


def test_empty_batch_makes_no_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": []})

    result = _client(handler).send_batch([])

    assert calls == []
    assert result.tickets == []
