"""
Webhook notifier: posts workflow notifications as JSON to an HTTP endpoint.

Behavior:
    - Timeouts, connection errors, HTTP 5xx and 429 raise ProviderTransientError
      so the orchestrator retries with backoff.
    - Any other 4xx raises ProviderPermanentError.
    - Redirects are not followed; a 3xx is treated as a permanent misconfiguration.

Security:
    Do not log the target URL query string or the bearer token.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import httpx

from jitaccess.errors import ConfigurationError, ProviderPermanentError, ProviderTransientError

from .ports import Capability, NotificationRequest

LOG = logging.getLogger(__name__)


class WebhookNotifier:
    capabilities = (Capability.NOTIFIER,)

    def __init__(
        self,
        *,
        url: str = "",
        token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout
        self._transport = transport

    def initialize(self, config: Mapping[str, Any]) -> None:
        url = str(config.get("url") or self._url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ConfigurationError("webhook notifier requires an absolute http(s) 'url'")
        self._url = url
        self._token = str(config.get("token") or self._token or "")
        if "timeout" in config:
            self._timeout = float(config["timeout"])

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def send_notification(self, request: NotificationRequest) -> None:
        if not self._url:
            raise ConfigurationError("webhook notifier used before initialize()")
        try:
            with httpx.Client(timeout=self._timeout, follow_redirects=False, transport=self._transport) as client:
                resp = client.post(self._url, json=request.to_dict(), headers=self._headers())
        except httpx.TimeoutException as exc:
            raise ProviderTransientError(f"webhook timeout: {type(exc).__name__}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransientError(f"webhook transport error: {type(exc).__name__}") from exc

        code = resp.status_code
        if code >= 500 or code == 429:
            raise ProviderTransientError(f"webhook http_error:{code}")
        if code >= 300:
            raise ProviderPermanentError(f"webhook http_error:{code}")
        LOG.debug(
            "webhook.notification.sent execution=%s kind=%s status=%s",
            request.execution_id,
            request.kind,
            code,
        )


def build(url: str = "", token: str = "") -> WebhookNotifier:
    return WebhookNotifier(url=url, token=token)


__all__ = ["WebhookNotifier", "build"]
