"""Tests for change-alert selection and delivery."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
import requests

from config.settings import NotificationSettings
from services.shared.models import ChangeEvent
from services.shared.notifications import (
    ChangeNotifier,
    NotificationError,
    build_recommended_actions,
    parse_severity,
    select_alert_events,
)

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def event(event_type, severity, minutes_ago=0, title="Charges"):
    return ChangeEvent(
        source_id="stripe",
        canonical_url="https://docs.stripe.com/api/charges",
        title=title,
        event_type=event_type,
        severity=severity,
        summary=f"{event_type} in {title}",
        details={},
        detected_at=NOW - timedelta(minutes=minutes_ago),
    )


def mock_session(ok=True, status_code=200, text=""):
    session = Mock(spec=requests.Session)
    session.post.return_value = Mock(ok=ok, status_code=status_code, text=text)
    return session


class TestSelection:
    """Test select_alert_events."""

    def test_default_drops_quiet_and_low_events(self):
        events = [event("updated", "low"), event("document_added", "low"),
                  event("deprecation", "medium"), event("breaking_change", "critical")]

        selected = select_alert_events(events, NotificationSettings())

        assert [e.event_type for e in selected] == ["breaking_change", "deprecation"]

    def test_include_updated(self):
        events = [event("updated", "low"), event("deprecation", "medium")]
        settings = NotificationSettings(min_severity="low", include_updated=True)

        assert len(select_alert_events(events, settings)) == 2

    def test_newest_first_within_severity_and_capped(self):
        events = [event("deprecation", "medium", minutes_ago=m, title=str(m)) for m in (5, 1, 3)]

        selected = select_alert_events(events, NotificationSettings(max_events=2))

        assert [e.title for e in selected] == ["1", "3"]

    @pytest.mark.parametrize("raw, expected", [("HIGH", "high"), (None, "medium"), ("urgent", "medium")])
    def test_parse_severity(self, raw, expected):
        assert parse_severity(raw) == expected


class TestRecommendedActions:
    """Test build_recommended_actions."""

    def test_breaking_change_escalates(self):
        actions = build_recommended_actions(event("breaking_change", "critical"))
        assert actions[0].startswith("Open migration task")
        assert actions[-1] == "Escalate to platform owner for pre-merge review."

    def test_document_added(self):
        actions = build_recommended_actions(event("document_added", "low"))
        assert actions == ["Review newly added docs and update internal integration notes."]


class TestChangeNotifier:
    """Test ChangeNotifier rendering and posting."""

    def test_message_format(self):
        notifier = ChangeNotifier("https://hooks.example.com/x", session=mock_session())

        text = notifier.build_change_message("stripe", [event("deprecation", "medium")])

        assert text.splitlines() == [
            "*docwatch* change alert for `stripe` (1 event)",
            "• [MEDIUM] deprecation - Charges",
            "  deprecation in Charges",
            "  Action: Create deprecation remediation ticket and assign owner.",
            "  https://docs.stripe.com/api/charges",
        ]

    def test_notify_posts_json(self):
        session = mock_session()
        notifier = ChangeNotifier("https://hooks.example.com/x", timeout_seconds=5, session=session)

        assert notifier.notify("stripe", [event("deprecation", "medium"), event("updated", "low")])

        args, kwargs = session.post.call_args
        assert args[0] == "https://hooks.example.com/x"
        assert "(2 events)" in kwargs["json"]["text"]
        assert kwargs["timeout"] == 5

    def test_nothing_to_send(self):
        session = mock_session()
        assert not ChangeNotifier("https://hooks.example.com/x", session=session).notify("stripe", [])
        session.post.assert_not_called()

    def test_webhook_failure_raises(self):
        notifier = ChangeNotifier("https://hooks.example.com/x",
                                  session=mock_session(ok=False, status_code=500, text="nope"))

        with pytest.raises(NotificationError, match="status=500"):
            notifier.notify("stripe", [event("deprecation", "medium")])

    def test_test_message(self):
        session = mock_session()
        ChangeNotifier("https://hooks.example.com/x", session=session).send_test_message(actor=" ")

        text = session.post.call_args.kwargs["json"]["text"]
        assert "actor: `operator`" in text
        assert text.endswith("status: webhook verified")

    def test_from_settings(self):
        assert ChangeNotifier.from_settings(NotificationSettings()) is None
        notifier = ChangeNotifier.from_settings(NotificationSettings(webhook_url="https://hooks.example.com/x"))
        assert notifier.webhook_url == "https://hooks.example.com/x"
