"""
Email audit model.

One row per channel delivery attempt. Append-only: rows are never updated,
and only a retention job outside the notification core deletes them.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Integer, String, Text, DateTime, Index

from bugnotify.database import Base


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class EmailAudit(Base):
    """
    Email Audit - outcome of one delivery attempt on one channel.

    The table keeps its historical name even though every channel writes
    here; ``channel`` tells them apart.
    """

    __tablename__ = "email_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)

    bug_id = Column(Integer, nullable=False, default=0, index=True)  # 0 for digests
    user_id = Column(Integer, nullable=False, index=True)

    # Address, webhook marker or push endpoint
    recipient = Column(String(512), nullable=False)
    subject = Column(String(255), nullable=False, default="")
    channel = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False)

    # Error text on failure; provider message id on success when known
    error_message = Column(Text, nullable=False, default="")

    date_sent = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_email_audit_user_date", "user_id", "date_sent"),
        Index("ix_email_audit_bug_channel", "bug_id", "channel"),
    )

    def __repr__(self):
        return (
            f"<EmailAudit {self.id}: "
            f"{self.channel} -> {self.recipient} [{self.status}] "
            f"at {self.date_sent}>"
        )
