"""
Tracker Models

The slice of the issue tracker schema the notification core reads:
users, project membership and issue core fields. Owned and written by the
tracker itself; the notification core only queries these tables.
"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from bugnotify.database import Base


class User(Base):
    """Tracker account."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(191), unique=True, nullable=False, index=True)
    realname = Column(String(191), nullable=False, default="")
    email = Column(String(191), nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    memberships = relationship("ProjectMembership", back_populates="user", cascade="all, delete-orphan")


class ProjectMembership(Base):
    """A user's access to a project."""

    __tablename__ = "project_memberships"

    project_id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    access_level = Column(Integer, nullable=False, default=10)

    user = relationship("User", back_populates="memberships")


class Issue(Base):
    """Issue core fields used for eligibility and filtering."""

    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, nullable=False, index=True)
    reporter_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    handler_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    summary = Column(String(255), nullable=False, default="")
    category_id = Column(Integer, nullable=False, default=0)
    priority = Column(Integer, nullable=False, default=30)  # 10 none .. 60 immediate
    severity = Column(Integer, nullable=False, default=50)  # 10 feature .. 80 block
    status = Column(Integer, nullable=False, default=10)
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
