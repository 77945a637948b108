"""
Helmet Guard - Notification Dispatcher
Best-effort delivery of accident notifications to a webhook endpoint

Delivery runs on a background executor so the escalation state machine only
pays the cost of enqueueing. Failures are logged and counted, never raised.
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import List, Optional

import requests

logger = logging.getLogger(__name__)

# Stage -> delivery priority
STAGE_PRIORITY = {
    'initial': 'low',
    'emergency': 'high',
}


class NotificationDispatcher:
    """
    Sends notification payloads to the configured webhook

    Payload contract:
        {stage: 'initial'|'emergency', accidentId, danger, lat, lon, contacts[]}
    """

    def __init__(
            self,
            webhook_url: Optional[str] = None,
            contacts: Optional[List[str]] = None,
            timeout: float = 10.0,
            retry_attempts: int = 3,
            retry_backoff: float = 1.0,
            session: Optional[requests.Session] = None
    ):
        """
        Args:
            webhook_url: Endpoint receiving POSTed JSON payloads
            contacts: Default contacts used when a payload carries none
            timeout: Per-request timeout in seconds
            retry_attempts: Attempts per payload before giving up
            retry_backoff: Seconds between attempts (multiplied by attempt number)
            session: requests session, created if omitted
        """
        self.webhook_url = webhook_url
        self.contacts = list(contacts or [])
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_backoff = retry_backoff
        self.session = session if session else requests.Session()

        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='notify')

        self.sent_count = 0
        self.failed_count = 0

    @classmethod
    def from_config(cls, config) -> 'NotificationDispatcher':
        """Build from an EscalationConfig."""
        return cls(
            webhook_url=config.webhook_url,
            contacts=config.contacts,
            timeout=config.notify_timeout_seconds,
            retry_attempts=config.notify_retry_attempts,
            retry_backoff=config.notify_retry_backoff_seconds,
        )

    def dispatch(self, payload: dict) -> Future:
        """
        Enqueue a payload for background delivery

        Args:
            payload: Notification payload

        Returns:
            Future resolving to True on delivery, False on failure
        """
        return self._executor.submit(self.send, dict(payload))

    def send(self, payload: dict) -> bool:
        """
        Deliver a payload, retrying transient failures

        Args:
            payload: Notification payload

        Returns:
            True if the endpoint accepted it
        """
        stage = payload.get('stage', 'initial')
        accident_id = payload.get('accidentId')

        if not payload.get('contacts'):
            payload['contacts'] = list(self.contacts)

        if not self.webhook_url:
            self.failed_count += 1
            logger.warning(f"⚠ No notification endpoint configured, {stage} notification for {accident_id} not sent")
            return False

        headers = {'X-Priority': STAGE_PRIORITY.get(stage, 'low')}

        for attempt in range(1, self.retry_attempts + 1):
            try:
                response = self.session.post(
                    self.webhook_url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                self.sent_count += 1
                logger.info(f"✓ Sent {stage} notification for {accident_id}")
                return True
            except requests.RequestException as e:
                logger.warning(
                    f"⚠ {stage} notification for {accident_id} failed "
                    f"(attempt {attempt}/{self.retry_attempts}): {e}"
                )
                if attempt < self.retry_attempts:
                    time.sleep(self.retry_backoff * attempt)

        self.failed_count += 1
        logger.error(f"✗ Giving up on {stage} notification for {accident_id}")
        return False

    def close(self, wait: bool = True):
        """Stop accepting payloads, optionally waiting for in-flight ones"""
        self._executor.shutdown(wait=wait)
        self.session.close()

    def __repr__(self):
        return f"<NotificationDispatcher(sent={self.sent_count}, failed={self.failed_count})>"
