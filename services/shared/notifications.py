"""Change-alert notifications.

Selection (which events are worth an alert) happens on the caller side with
``select_alert_events``; ``ChangeNotifier`` only renders and posts.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import requests

from config.settings import NotificationSettings
from .change_detection import EventType, Severity
from .models import ChangeEvent, ensure_utc

logger = logging.getLogger(__name__)

SEVERITY_WEIGHT = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

ALERT_HEADER = "*docwatch* change alert"


class NotificationError(Exception):
    """Raised when the webhook rejects a message."""


def parse_severity(value: Optional[str]) -> str:
    normalized = (value or Severity.MEDIUM).lower()
    return normalized if normalized in SEVERITY_WEIGHT else Severity.MEDIUM


def build_recommended_actions(event: ChangeEvent) -> List[str]:
    """Follow-up actions for an event, most important first."""
    actions: List[str] = []

    if event.event_type == EventType.BREAKING_CHANGE:
        actions.append("Open migration task and block deploy until compatibility checks pass.")
        actions.append("Run integration tests against affected API paths.")
    elif event.event_type == EventType.DEPRECATION:
        actions.append("Create deprecation remediation ticket and assign owner.")
        actions.append("Identify deprecated usage and schedule replacement changes.")
    elif event.event_type == EventType.UPDATED:
        actions.append("Review updated docs and validate impacted runbooks.")
    else:
        actions.append("Review newly added docs and update internal integration notes.")

    if event.severity in (Severity.HIGH, Severity.CRITICAL):
        actions.append("Escalate to platform owner for pre-merge review.")

    return actions


def _detected_timestamp(event: ChangeEvent) -> float:
    detected = ensure_utc(event.detected_at)
    return detected.timestamp() if detected else 0.0


def select_alert_events(events: Iterable[ChangeEvent], settings: NotificationSettings) -> List[ChangeEvent]:
    """Filter by minimum severity and event type, most severe and newest first."""
    min_weight = SEVERITY_WEIGHT[parse_severity(settings.min_severity)]
    quiet_types = (EventType.UPDATED, EventType.DOCUMENT_ADDED)

    selected = [
        event for event in events
        if SEVERITY_WEIGHT.get(event.severity, 0) >= min_weight
        and (settings.include_updated or event.event_type not in quiet_types)
    ]
    selected.sort(key=lambda e: (SEVERITY_WEIGHT.get(e.severity, 0), _detected_timestamp(e)), reverse=True)
    return selected[:max(1, settings.max_events)]


class ChangeNotifier:
    """Renders change events and posts them to a JSON webhook."""

    def __init__(self, webhook_url: str, timeout_seconds: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.webhook_url = webhook_url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: NotificationSettings) -> Optional['ChangeNotifier']:
        """A notifier for the configured webhook, or None when none is set."""
        if not settings.webhook_url:
            return None
        return cls(settings.webhook_url, timeout_seconds=settings.timeout_seconds)

    def build_change_message(self, source: str, events: List[ChangeEvent]) -> Optional[str]:
        if not events:
            return None

        plural = "" if len(events) == 1 else "s"
        lines = [f"{ALERT_HEADER} for `{source}` ({len(events)} event{plural})"]
        for event in events:
            actions = build_recommended_actions(event)
            lines.extend([
                f"• [{event.severity.upper()}] {event.event_type} - {event.title}",
                f"  {event.summary}",
                f"  Action: {actions[0]}",
                f"  {event.canonical_url}",
            ])
        return "\n".join(lines)

    def post_text(self, text: str) -> None:
        response = self.session.post(self.webhook_url, json={"text": text}, timeout=self.timeout_seconds)
        if not response.ok:
            raise NotificationError(
                f"webhook_failed status={response.status_code} body={response.text}"
            )

    def notify(self, source: str, events: List[ChangeEvent]) -> bool:
        """Post an alert for the given (already selected) events.

        Returns:
            True if a message was sent
        """
        text = self.build_change_message(source, events)
        if not text:
            return False
        self.post_text(text)
        logger.info(f"Sent change alert for {source} with {len(events)} event(s)")
        return True

    def send_test_message(self, source: str = "manual", actor: str = "operator",
                          message: Optional[str] = None) -> None:
        """Verify the webhook with a fixed test message."""
        text = (message or "").strip() or "\n".join([
            f"{ALERT_HEADER} test notification",
            f"source: `{source.strip() or 'manual'}`",
            f"actor: `{actor.strip() or 'operator'}`",
            "status: webhook verified",
        ])
        self.post_text(text)
