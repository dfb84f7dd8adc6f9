"""Tests for the audit logger."""

import logging
from datetime import UTC, datetime

from sessionguard.services.audit import AuditLogger
from sessionguard.services.types import SessionEvent


class TestAuditLogger:
    """Tests for event recording, redaction and listeners."""

    def test_records_event(self):
        audit = AuditLogger()

        audit.record(SessionEvent.SESSION_CREATED, {"subject_id": "u1", "session_id": "s1"})

        events = audit.get_recent_events()
        assert len(events) == 1
        assert events[0]["event"] == "session_created"
        assert events[0]["subject_id"] == "u1"
        assert "timestamp" in events[0]

    def test_redacts_sensitive_fields(self):
        audit = AuditLogger()

        audit.record(
            SessionEvent.TOKEN_BLACKLISTED,
            {"refresh_token": "eyJ...", "api_key": "k", "token_type": "access"},
        )

        event = audit.get_recent_events()[0]
        assert event["refresh_token"] == "[REDACTED]"
        assert event["api_key"] == "[REDACTED]"
        assert event["token_type"] == "access"

    def test_datetimes_serialized(self):
        audit = AuditLogger()
        when = datetime(2026, 1, 5, tzinfo=UTC)

        audit.record(SessionEvent.SWEEP_COMPLETED, {"at": when})

        assert audit.get_recent_events()[0]["at"] == when.isoformat()

    def test_buffer_is_bounded(self):
        audit = AuditLogger(buffer_size=3)
        for i in range(5):
            audit.record(SessionEvent.SWEEP_COMPLETED, {"n": i})

        assert [e["n"] for e in audit.get_recent_events()] == [2, 3, 4]
        assert [e["n"] for e in audit.get_recent_events(count=1)] == [4]

    def test_listeners_receive_events(self):
        audit = AuditLogger()
        received = []
        audit.add_listener(received.append)
        audit.add_listener(received.append)

        audit.record(SessionEvent.SUBJECT_REVOKED, {"subject_id": "u1"})
        audit.remove_listener(received.append)
        audit.record(SessionEvent.SUBJECT_REVOKED, {"subject_id": "u2"})

        assert [e["subject_id"] for e in received] == ["u1"]

    def test_failing_listener_is_logged(self, caplog):
        audit = AuditLogger()
        received = []

        def broken(entry):
            raise RuntimeError("boom")

        audit.add_listener(broken)
        audit.add_listener(received.append)

        with caplog.at_level(logging.WARNING, logger="sessionguard.services.audit"):
            audit.record(SessionEvent.SESSION_TERMINATED, {"session_id": "s1"})

        assert len(received) == 1
        assert "boom" in caplog.text
