"""Best-effort completion callbacks.

Notifications run on a background thread so the HTTP response is not held up
by a slow receiver. Lambda freezes the execution environment once the handler
returns, so the handler drains pending notifications for at most the webhook
timeout before returning; anything still in flight after that may be delayed
until the next invocation thaws the environment, or lost.

The webhook host is resolved and checked again at send time, and the request
goes to that checked address with the original Host header and TLS server
name, so a DNS answer that changes after validation cannot redirect it.
"""
import socket
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

import httpx
from aws_lambda_powertools import Logger

from .config import Settings
from .errors import RequestValidationError
from .sanitize import sanitize_url
from .validation import Resolver, resolve_public_address

logger = Logger(child=True)


class WebhookNotifier:
    """Best-effort completion callbacks. Failures are logged, never raised."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.BaseTransport | None = None,
        executor: ThreadPoolExecutor | None = None,
        sleep: Callable[[float], None] = time.sleep,
        resolver: Resolver = socket.getaddrinfo,
    ):
        self._timeout = settings.webhook_timeout_seconds
        self._max_attempts = settings.webhook_max_retries
        self._base_delay = settings.retry_base_delay_seconds
        self._allow_private = settings.allow_private_webhooks
        self._transport = transport
        self._executor = executor
        self._sleep = sleep
        self._resolve = resolver
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def dispatch(self, webhook_url: str | None, payload: dict[str, Any]) -> Future | None:
        """Send the notification in the background and return immediately."""
        if not webhook_url:
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="webhook")
        future = self._executor.submit(self.notify, webhook_url, payload)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for dispatched notifications. True when none remain."""
        with self._lock:
            pending = set(self._pending)
        if not pending:
            return True

        _, not_done = wait(pending, timeout=timeout)
        if not_done:
            logger.warning("Webhook notifications still pending", extra={"pending": len(not_done)})
            return False
        return True

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def notify(self, webhook_url: str | None, payload: dict[str, Any]) -> bool:
        if not webhook_url:
            return False

        target = sanitize_url(webhook_url)
        try:
            url = httpx.URL(webhook_url)
            request_url, headers, extensions = self._pin(url)
        except RequestValidationError as exc:
            logger.warning("Webhook notification refused", extra={"webhook": target, "error": exc.message})
            return False
        except httpx.InvalidURL:
            logger.warning("Webhook notification refused", extra={"webhook": target, "error": "Invalid URL"})
            return False

        try:
            with httpx.Client(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                for attempt in range(1, self._max_attempts + 1):
                    error = self._send(client, request_url, payload, headers, extensions)
                    if error is None:
                        logger.info("Webhook notification sent", extra={"webhook": target, "attempt": attempt})
                        return True
                    if attempt < self._max_attempts:
                        logger.info(
                            "Retrying webhook notification",
                            extra={"webhook": target, "attempt": attempt + 1, "error": error},
                        )
                        self._sleep(self._base_delay * (2 ** (attempt - 1)))
        except Exception:
            logger.exception("Webhook notification error", extra={"webhook": target})
            return False

        logger.warning(
            "Webhook notification failed",
            extra={"webhook": target, "attempts": self._max_attempts, "error": error},
        )
        return False

    def _pin(self, url: httpx.URL) -> tuple[httpx.URL, dict[str, str], dict[str, Any]]:
        """Point ``url`` at the checked address of its host, keeping Host and SNI on the name."""
        if self._allow_private:
            return url, {}, {}

        port = url.port or (443 if url.scheme == "https" else 80)
        address = resolve_public_address(url.host, port, self._resolve)
        headers = {"Host": url.netloc.decode("ascii")}
        extensions = {"sni_hostname": url.host} if url.scheme == "https" else {}
        return url.copy_with(host=address), headers, extensions

    def _send(
        self,
        client: httpx.Client,
        url: httpx.URL,
        payload: dict[str, Any],
        headers: dict[str, str],
        extensions: dict[str, Any],
    ) -> str | None:
        try:
            response = client.post(url, json=payload, headers=headers, extensions=extensions)
        except httpx.HTTPError as exc:
            return f"{type(exc).__name__}: {exc}"
        if response.is_success:
            return None
        return f"Webhook returned HTTP {response.status_code}"
