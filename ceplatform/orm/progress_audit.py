"""
ceplatform/orm/progress_audit.py
Append-only audit log for privileged progress writes

Every administrative override (reset, unit status override) records who did
it, why, and the state before and after.
"""
from sqlalchemy import Column, Integer, String, Text, ForeignKey, JSON, Index

from ceplatform.orm.base import BaseModel


class ProgressAuditLog(BaseModel):
    __tablename__ = "progress_audit_logs"

    enrollment_id = Column(
        Integer,
        ForeignKey("enrollments.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    actor_user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Administrator who performed the override"
    )

    action = Column(String(64), nullable=False, comment="enrollment_reset, unit_status_override, ...")
    reason = Column(Text, nullable=True)
    before_state = Column(JSON, nullable=True)
    after_state = Column(JSON, nullable=True)

    __table_args__ = (
        Index("ix_progress_audit_enrollment_created", "enrollment_id", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "enrollment_id": self.enrollment_id,
            "actor_user_id": self.actor_user_id,
            "action": self.action,
            "reason": self.reason,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ProgressAuditLog(enrollment_id={self.enrollment_id}, action='{self.action}')>"
