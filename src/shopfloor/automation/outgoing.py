"""Outbound webhook delivery over httpx with tenacity retry.

Backs the trigger_outgoing_webhook action: POSTs the inbound payload as
JSON, signs the body when a secret is supplied, and retries transient
failures (429, 5xx, connection errors) with exponential backoff.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx
import tenacity

from shopfloor.automation.security import (
    generate_delivery_id,
    sign_payload,
    validate_webhook_url,
)
from shopfloor.exceptions import OutgoingWebhookError
from shopfloor.models.config import DispatchConfig

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _is_retryable(exc: BaseException) -> bool:
    """Retryable: 429, 500, 502, 503, 504, connection errors and timeouts."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in _RETRYABLE_STATUS_CODES
    return isinstance(exc, (httpx.ConnectError, httpx.TimeoutException))


@dataclass(frozen=True)
class Delivery:
    url: str
    status_code: int
    delivery_id: str
    attempts: int
    response_time_ms: float


class OutgoingWebhookClient:
    """Sync httpx client for forwarding payloads to external endpoints.

    Usage::

        with OutgoingWebhookClient(DispatchConfig()) as client:
            delivery = client.send("https://example.com/hook", {"id": 1})
    """

    def __init__(
        self,
        config: DispatchConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._config = config or DispatchConfig()
        self._client = httpx.Client(
            timeout=self._config.timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "User-Agent": self._config.user_agent,
            },
        )

    @property
    def config(self) -> DispatchConfig:
        return self._config

    def send(
        self,
        url: str,
        payload: Any,
        *,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> Delivery:
        """POST *payload* to *url*.

        Raises:
            UnsafeUrlError: If the URL is refused before any request.
            OutgoingWebhookError: On a non-2xx response or transport failure
                once retries are exhausted.
        """
        url = validate_webhook_url(url, allow_private=self._config.allow_private_urls)
        delivery_id = generate_delivery_id()
        body = json.dumps(payload, default=str)
        request_headers = {"X-Webhook-Delivery": delivery_id, **(headers or {})}
        if secret:
            request_headers["X-Webhook-Signature"] = sign_payload(body, secret)

        retryer = tenacity.Retrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=tenacity.wait_exponential(
                multiplier=self._config.retry_backoff, exp_base=2, min=0
            ),
            stop=tenacity.stop_after_attempt(self._config.max_attempts),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        started = time.perf_counter()
        try:
            response = retryer(self._post, url, body, request_headers)
        except httpx.HTTPStatusError as exc:
            code = exc.response.status_code
            raise OutgoingWebhookError(
                url, f"HTTP {code}: {exc.response.reason_phrase}", status_code=code
            ) from exc
        except httpx.HTTPError as exc:
            raise OutgoingWebhookError(url, str(exc) or type(exc).__name__) from exc
        elapsed_ms = (time.perf_counter() - started) * 1000
        attempts = retryer.statistics.get("attempt_number", 1)
        logger.info(
            "Delivered %s to %s (HTTP %d, attempt %d)",
            delivery_id,
            url,
            response.status_code,
            attempts,
        )
        return Delivery(
            url=url,
            status_code=response.status_code,
            delivery_id=delivery_id,
            attempts=attempts,
            response_time_ms=round(elapsed_ms, 2),
        )

    def _post(self, url: str, body: str, headers: dict[str, str]) -> httpx.Response:
        """Single POST (no retry). Raises HTTPStatusError on non-2xx."""
        response = self._client.post(url, content=body, headers=headers)
        response.raise_for_status()
        return response

    def close(self) -> None:
        """Close the underlying httpx client."""
        self._client.close()

    def __enter__(self) -> OutgoingWebhookClient:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
