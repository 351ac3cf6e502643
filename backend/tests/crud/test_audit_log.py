"""
Tests for IntegrationAuditLog CRUD operations.
"""

from sqlmodel import Session

from oauth_core.crud.audit_log import get_audit_logs, record_audit_event
from oauth_core.models import IntegrationAction


class TestAuditLog:
    def test_record_and_read_newest_first(self, session: Session):
        record_audit_event(
            session=session,
            user_id="alice",
            service_name="github",
            action=IntegrationAction.CONNECT,
        )
        record_audit_event(
            session=session,
            user_id="alice",
            service_name="github",
            action=IntegrationAction.REFRESH_FAILED,
            success=False,
            detail="invalid_grant",
        )

        logs = get_audit_logs(session=session, user_id="alice")

        assert [log.action for log in logs] == ["refresh_failed", "connect"]
        assert logs[0].success is False
        assert logs[0].detail == "invalid_grant"

    def test_filter_by_provider_and_user(self, session: Session):
        for user_id, service in (("alice", "github"), ("alice", "slack"), ("bob", "github")):
            record_audit_event(
                session=session,
                user_id=user_id,
                service_name=service,
                action=IntegrationAction.CONNECT,
            )

        logs = get_audit_logs(session=session, user_id="alice", service_name="github")

        assert len(logs) == 1
        assert logs[0].service_name == "github"

    def test_detail_is_truncated(self, session: Session):
        entry = record_audit_event(
            session=session,
            user_id="alice",
            service_name="github",
            action=IntegrationAction.DISCONNECT,
            detail="x" * 1000,
        )

        assert len(entry.detail) == 500
