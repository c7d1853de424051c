from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import httpx


@dataclass(frozen=True)
class SinkResult:
    url: str
    ok: bool
    status_code: int | None
    error: str | None = None
    retryable: bool = False


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


class EventSinkClient:
    """
    Posts domain events to notification/analytics consumers.

    - One AsyncClient per instance (connection pooling).
    - No retries here; the outbox returns undelivered events to pending.
    - Results carry a retryable classification.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        max_error_chars: int = 500,
        default_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_error = max_error_chars
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=dict(default_headers or {}),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "EventSinkClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def deliver(self, url: str, event: dict[str, Any]) -> SinkResult:
        headers = {"X-Event-Id": event["id"], "X-Event-Type": event["event_type"]}
        try:
            resp = await self._client.post(url, json=event, headers=headers)
        except httpx.TimeoutException:
            return SinkResult(url=url, ok=False, status_code=None, error="timeout", retryable=True)
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            return SinkResult(url=url, ok=False, status_code=None, error=f"request_error: {e}", retryable=True)

        if 200 <= resp.status_code < 300:
            return SinkResult(url=url, ok=True, status_code=resp.status_code)

        retryable = resp.status_code in (408, 429, 500, 502, 503, 504)
        return SinkResult(
            url=url,
            ok=False,
            status_code=resp.status_code,
            error=f"HTTP {resp.status_code}: {_cap_text(resp.text, max_chars=self._max_error)}",
            retryable=retryable,
        )

    async def deliver_all(self, urls: list[str], event: dict[str, Any]) -> list[SinkResult]:
        return [await self.deliver(url, event) for url in urls]


def event_envelope(ev) -> dict[str, Any]:
    """Wire shape of an OutboxEvent as consumers receive it."""
    return {
        "id": ev.id,
        "event_type": ev.event_type,
        "aggregate_type": ev.aggregate_type,
        "aggregate_id": ev.aggregate_id,
        "payload": ev.payload,
        "actor_id": ev.created_by,
        "occurred_at": ev.created_at.isoformat() if hasattr(ev.created_at, "isoformat") else str(ev.created_at),
    }
