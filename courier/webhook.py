"""HTTP delivery of messages to their webhook URLs with retries."""

from __future__ import annotations

import random
import time
from datetime import datetime, timezone
from typing import Iterator

import httpx

from courier.config import Config
from courier.logger import Logger
from courier.models import Message, WebhookPayload

USER_AGENT = "insider-messaging/1.0"
_HTTP_TIMEOUT = 30.0
_MAX_RETRIES = 2
_DEADLINE_EXCEEDED = "context deadline exceeded"


class WebhookError(Exception):
    """Delivery to a webhook failed."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RetryableWebhookError(WebhookError):
    """A delivery failure that is worth another attempt."""


def _expired(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class WebhookClient:
    """Posts message payloads to webhook URLs, retrying transient failures."""

    def __init__(
        self,
        config: Config,
        logger: Logger | None = None,
        *,
        http_client: httpx.Client | None = None,
        jitter: float = 1.0,
    ) -> None:
        self._config = config
        self._logger = logger if logger is not None else Logger()
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=_HTTP_TIMEOUT, follow_redirects=True)
        self._jitter = jitter

    def __enter__(self) -> WebhookClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Release the underlying HTTP client if this instance created it."""
        if self._owns_client:
            self._http.close()

    def send_message(self, message: Message, timeout: float | None = None) -> None:
        """Deliver a message; raise WebhookError when delivery fails.

        ``timeout`` bounds the whole delivery, retries included.
        """
        if not message.webhook_url:
            self._logger.debug(
                "No webhook URL provided, skipping webhook delivery", message_id=message.id
            )
            return

        deadline = None if timeout is None else time.monotonic() + timeout
        status = getattr(message.status, "value", message.status)
        payload = WebhookPayload(
            message_id=message.id,
            recipient=message.recipient,
            content=message.content,
            status=str(status),
            created_at=message.created_at,
            sent_at=datetime.now(timezone.utc),
        )

        delays = self._delays(time.monotonic())
        while True:
            if _expired(deadline):
                raise WebhookError(_DEADLINE_EXCEEDED)
            try:
                self._send(message.webhook_url, payload, deadline)
                return
            except RetryableWebhookError:
                delay = next(delays, None)
                if delay is None:
                    raise
                self._wait(delay, deadline)

    def _delays(self, start: float) -> Iterator[float]:
        for attempt in range(_MAX_RETRIES):
            remaining = self._config.backoff_max - (time.monotonic() - start)
            if remaining <= 0:
                return
            delay = min(self._config.backoff_min * 2**attempt, remaining)
            if self._jitter > 0:
                delay += random.uniform(-self._jitter, self._jitter)
                if delay <= 0:
                    delay = 1e-9
            yield delay

    @staticmethod
    def _wait(delay: float, deadline: float | None) -> None:
        if deadline is not None and time.monotonic() + delay >= deadline:
            time.sleep(max(0.0, deadline - time.monotonic()))
            raise WebhookError(_DEADLINE_EXCEEDED)
        time.sleep(delay)

    def _send(self, url: str, payload: WebhookPayload, deadline: float | None) -> None:
        request_timeout = _HTTP_TIMEOUT
        if deadline is not None:
            request_timeout = max(min(_HTTP_TIMEOUT, deadline - time.monotonic()), 0.001)

        self._logger.debug(
            "Sending webhook request",
            url=url,
            message_id=payload.message_id,
            recipient=payload.recipient,
        )
        try:
            resp = self._http.post(
                url,
                content=payload.to_json().encode("utf-8"),
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
                timeout=request_timeout,
            )
        except httpx.InvalidURL as exc:
            raise WebhookError(f"failed to create HTTP request: {exc}") from exc
        except httpx.HTTPError as exc:
            if isinstance(exc, httpx.TimeoutException) and _expired(deadline):
                reason = _DEADLINE_EXCEEDED
            else:
                reason = str(exc) or type(exc).__name__
            self._logger.error(
                "HTTP request failed", url=url, error=reason, message_id=payload.message_id
            )
            raise RetryableWebhookError(f"HTTP request failed: {reason}") from exc

        code = resp.status_code
        body = resp.text
        self._logger.debug(
            "Webhook response received",
            url=url,
            status_code=code,
            message_id=payload.message_id,
            response_body=body,
        )

        if 200 <= code < 300:
            self._logger.info(
                "Webhook delivered successfully",
                url=url,
                status_code=code,
                message_id=payload.message_id,
            )
            return
        if 400 <= code < 500:
            self._logger.error(
                "Webhook delivery failed with client error",
                url=url,
                status_code=code,
                message_id=payload.message_id,
                response_body=body,
            )
            raise WebhookError(f"webhook delivery failed with status {code}: {body}", code, body)
        if code >= 500:
            self._logger.warn(
                "Webhook delivery failed with server error, will retry",
                url=url,
                status_code=code,
                message_id=payload.message_id,
                response_body=body,
            )
            raise RetryableWebhookError(
                f"webhook delivery failed with status {code}: {body}", code, body
            )
        self._logger.error(
            "Webhook delivery failed with unexpected status",
            url=url,
            status_code=code,
            message_id=payload.message_id,
            response_body=body,
        )
        raise WebhookError(
            f"webhook delivery failed with unexpected status {code}: {body}", code, body
        )