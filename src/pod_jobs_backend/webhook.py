"""
Outbound webhook delivery for session and synthesis outcomes.

Delivery is best-effort: one POST, and on any failure exactly one retry after
a fixed delay. Failures are logged and counted but never raised, because the
job and session state that triggered the webhook is already persisted.

Signatures are an integrity hint for the receiver. Without a configured
secret the header carries base64(``{identifier}:{event}:{timestamp}``), which
any party can forge; with ``webhook.signing_secret`` set it carries an
HMAC-SHA256 of the same string instead.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Lock
from typing import Any, Callable, Dict, Optional, Union

import httpx

from .models import SessionWebhookPayload, SynthesisWebhookPayload

logger = logging.getLogger(__name__)

WebhookPayload = Union[SessionWebhookPayload, SynthesisWebhookPayload]

EVENT_HEADER = "X-Storige-Event"
SIGNATURE_HEADER = "X-Storige-Signature"
TIMESTAMP_HEADER = "X-Storige-Timestamp"
RETRY_HEADER = "X-Storige-Retry"


class WebhookDispatcher:
    """
    Signs and delivers webhook payloads.

    ``send_callback`` runs inline; ``dispatch`` hands the same work to a small
    thread pool so status ingestion returns without waiting on the receiver.

    Attributes:
        delivered: Number of payloads accepted by a receiver
        failed: Number of payloads dropped after the retry
    """

    def __init__(
        self,
        timeout: float = 10.0,
        retry_delay: float = 2.0,
        signing_secret: str = "",
        max_workers: int = 4,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.signing_secret = signing_secret
        self._http_client = http_client
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="webhook")
        self._lock = Lock()
        self.delivered = 0
        self.failed = 0

    def generate_signature(self, payload: WebhookPayload) -> str:
        data = f"{payload.identifier}:{payload.event}:{payload.timestamp}".encode("utf-8")
        if self.signing_secret:
            digest = hmac.new(self.signing_secret.encode("utf-8"), data, hashlib.sha256).hexdigest()
            return f"sha256={digest}"
        return base64.b64encode(data).decode("ascii")

    def _headers(self, payload: WebhookPayload, retry: bool) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: payload.event,
            SIGNATURE_HEADER: self.generate_signature(payload),
            TIMESTAMP_HEADER: payload.timestamp,
        }
        if retry:
            headers[RETRY_HEADER] = "1"
        return headers

    def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self._http_client is not None:
            return self._http_client.post(url, json=body, headers=headers, timeout=self.timeout)
        with httpx.Client(trust_env=False) as client:
            return client.post(url, json=body, headers=headers, timeout=self.timeout)

    def _attempt(self, url: str, payload: WebhookPayload, retry: bool) -> bool:
        body = payload.model_dump(by_alias=True, exclude_none=True, mode="json")
        try:
            response = self._post(url, body, self._headers(payload, retry))
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Failed to send webhook {payload.event} to {url}: {e}")
            return False

        if 200 <= response.status_code < 300:
            logger.info(f"Webhook {payload.event} delivered to {url}: {response.status_code}")
            return True

        logger.warning(f"Webhook {payload.event} to {url} returned non-success status: {response.status_code}")
        return False

    def send_callback(self, url: Optional[str], payload: WebhookPayload) -> bool:
        """
        Deliver a payload, retrying once after ``retry_delay`` seconds.

        Args:
            url: Receiver URL; empty or None skips delivery entirely
            payload: Session or synthesis payload

        Returns:
            True if the receiver answered 2xx on either attempt
        """
        if not url:
            logger.warning("No callback URL provided, skipping webhook")
            return False

        logger.info(f"Sending webhook to {url}: {payload.event}")
        success = self._attempt(url, payload, retry=False)
        if not success:
            self._sleep(self.retry_delay)
            success = self._attempt(url, payload, retry=True)
            if success:
                logger.info(f"Webhook retry succeeded for {payload.event} ({payload.identifier})")
            else:
                logger.error(f"Webhook retry failed for {payload.event} ({payload.identifier}); giving up")

        with self._lock:
            if success:
                self.delivered += 1
            else:
                self.failed += 1
        return success

    def dispatch(self, url: Optional[str], payload: WebhookPayload) -> Future:
        """Queue a delivery on the background pool and return its future."""
        future = self._executor.submit(self.send_callback, url, payload)
        future.add_done_callback(lambda f: self._log_crash(f, url, payload))
        return future

    def _log_crash(self, future: Future, url: Optional[str], payload: WebhookPayload) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        logger.error(f"Webhook {payload.event} to {url} crashed: {exc!r}")
        with self._lock:
            self.failed += 1

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
