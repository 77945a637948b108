"""
Escalation Configuration
Countdown, quiescence and notification settings
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class EscalationConfig:
    """Escalation coordinator configuration parameters"""

    # Confirmation countdown before emergency escalation
    countdown_seconds: float = 30.0

    # Cooldown after resolution before a new event may be created
    quiescence_seconds: float = 5.0

    # Notification settings
    webhook_url: Optional[str] = None
    contacts: List[str] = field(default_factory=list)
    notify_timeout_seconds: float = 10.0
    notify_retry_attempts: int = 3
    notify_retry_backoff_seconds: float = 1.0

    # Persistence write retries
    persist_retry_attempts: int = 3
    persist_retry_backoff_seconds: float = 0.5

    @classmethod
    def for_session(cls) -> 'EscalationConfig':
        """
        Create the default live-monitoring configuration.

        Returns:
            EscalationConfig with the standard 30s countdown and 5s quiescence.
        """
        return cls()

    @classmethod
    def from_env(cls) -> 'EscalationConfig':
        """
        Build a configuration from environment variables.

        HELMET_WEBHOOK_URL  notification endpoint
        HELMET_CONTACTS     comma-separated contact list
        HELMET_COUNTDOWN_S  countdown override

        Returns:
            EscalationConfig with overrides applied.
        """
        config = cls.for_session()
        config.webhook_url = os.environ.get('HELMET_WEBHOOK_URL') or None

        contacts = os.environ.get('HELMET_CONTACTS', '')
        config.contacts = [c.strip() for c in contacts.split(',') if c.strip()]

        countdown = os.environ.get('HELMET_COUNTDOWN_S')
        if countdown:
            config.countdown_seconds = float(countdown)

        return config
