"""
CRUD operations for IntegrationAuditLog model.
"""

from sqlmodel import Session, select

from oauth_core.models import IntegrationAction, IntegrationAuditLog


def record_audit_event(
    *,
    session: Session,
    user_id: str,
    service_name: str,
    action: IntegrationAction,
    success: bool = True,
    detail: str | None = None,
) -> IntegrationAuditLog:
    """
    Append one lifecycle event to the audit log.

    Args:
        session: Database session
        user_id: User the integration belongs to
        service_name: Provider identifier
        action: What happened
        success: Whether the action succeeded
        detail: Short reason code, never token material

    Returns:
        Created IntegrationAuditLog
    """
    entry = IntegrationAuditLog(
        user_id=user_id,
        service_name=service_name,
        action=action.value,
        success=success,
        detail=detail[:500] if detail else None,
    )
    session.add(entry)
    session.commit()
    session.refresh(entry)
    return entry


def get_audit_logs(
    *,
    session: Session,
    user_id: str,
    service_name: str | None = None,
    limit: int = 50,
) -> list[IntegrationAuditLog]:
    """Get the most recent audit events for a user, newest first."""
    statement = select(IntegrationAuditLog).where(
        IntegrationAuditLog.user_id == user_id
    )
    if service_name is not None:
        statement = statement.where(IntegrationAuditLog.service_name == service_name)
    statement = statement.order_by(
        IntegrationAuditLog.created_at.desc(), IntegrationAuditLog.id.desc()
    ).limit(limit)
    return list(session.exec(statement).all())
