"""
Batched push delivery through an Expo-compatible HTTP gateway.

One POST carries every (token, payload) pair for a recipient. The gateway
answers with one result per message, in request order; there is no token echoed
back, so results are matched to tokens by position. Transport problems
(network errors, timeouts, non-2xx) fail the whole batch and are reported in
the returned BatchResult rather than raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import settings

logger = logging.getLogger(__name__)

PERMANENT_FAILURE_MARKERS = ("notregistered", "invalid", "expired")


@dataclass
class PushMessage:
    to: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str = "default"

    def to_json(self) -> dict[str, Any]:
        return {"to": self.to, "sound": self.sound, "title": self.title, "body": self.body, "data": self.data}


@dataclass
class PushTicket:
    token: str
    ok: bool
    message: str | None = None
    error_code: str | None = None

    @property
    def permanent_failure(self) -> bool:
        if self.ok:
            return False
        return is_permanent_failure(self.error_code) or is_permanent_failure(self.message)


@dataclass
class BatchResult:
    tickets: list[PushTicket]
    transport_error: str | None = None

    @property
    def delivered(self) -> list[PushTicket]:
        return [t for t in self.tickets if t.ok]

    @property
    def failed(self) -> list[PushTicket]:
        return [t for t in self.tickets if not t.ok]


def is_permanent_failure(message: str | None) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in PERMANENT_FAILURE_MARKERS)


def _normalize_results(body: Any) -> list[Any]:
    # Expo wraps tickets in {"data": [...]}; older gateways return a bare array or a single object.
    if isinstance(body, dict) and isinstance(body.get("data"), (list, dict)):
        body = body["data"]
    if isinstance(body, list):
        return body
    if isinstance(body, dict):
        return [body]
    return []


def _ticket_from_result(token: str, result: Any) -> PushTicket:
    if not isinstance(result, dict):
        return PushTicket(token=token, ok=False, message="malformed result")
    if result.get("status") == "ok":
        return PushTicket(token=token, ok=True)
    details = result.get("details")
    error_code = details.get("error") if isinstance(details, dict) else None
    return PushTicket(
        token=token,
        ok=False,
        message=str(result.get("message") or result.get("status") or "unknown error"),
        error_code=str(error_code) if error_code else None,
    )


class PushGatewayClient:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        access_token: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.access_token = access_token
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "Accept-Encoding": "gzip, deflate",
            "Content-Type": "application/json",
        }
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _fail_all(self, messages: list[PushMessage], error: str) -> BatchResult:
        return BatchResult(
            tickets=[PushTicket(token=m.to, ok=False, message=error) for m in messages],
            transport_error=error,
        )

    def send_batch(self, messages: list[PushMessage]) -> BatchResult:
        if not messages:
            return BatchResult(tickets=[])
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(self.url, json=[m.to_json() for m in messages], headers=self._headers())
        except httpx.TimeoutException as e:
            logger.warning("Push gateway timed out after %ss: %s", self.timeout, e)
            return self._fail_all(messages, f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.warning("Push gateway request failed: %s", e)
            return self._fail_all(messages, f"transport: {e}")

        if resp.status_code < 200 or resp.status_code >= 300:
            logger.warning("Push gateway returned %s: %s", resp.status_code, resp.text[:500])
            return self._fail_all(messages, f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            results = _normalize_results(resp.json())
        except ValueError as e:
            logger.warning("Push gateway returned undecodable body: %s", e)
            return self._fail_all(messages, "undecodable response")

        if len(results) != len(messages):
            logger.warning("Push gateway returned %s results for %s messages", len(results), len(messages))
        tickets = []
        for index, message in enumerate(messages):
            if index < len(results):
                tickets.append(_ticket_from_result(message.to, results[index]))
            else:
                tickets.append(PushTicket(token=message.to, ok=False, message="missing result"))
        return BatchResult(tickets=tickets)


_default_client: PushGatewayClient | None = None


def get_push_gateway() -> PushGatewayClient:
    global _default_client
    if _default_client is None:
        _default_client = PushGatewayClient(
            settings.push_gateway_url,
            timeout=settings.push_gateway_timeout_seconds,
            access_token=settings.push_gateway_access_token,
        )
    return _default_client
