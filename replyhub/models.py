"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import secrets
import uuid

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text

from replyhub.storage import Base
from replyhub.utils import utc_now


MESSAGE_TYPES = ("sms", "whatsapp", "email", "push", "other")
MESSAGE_STATUSES = ("pending", "sent", "delivered", "read", "failed", "cancelled")
TERMINAL_STATUSES = ("failed", "cancelled")
# Non-terminal statuses only move up this order
STATUS_RANK = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}
PRIORITIES = ("low", "normal", "high", "urgent")
LOG_LEVELS = ("trace", "debug", "info", "warn", "error", "fatal")


def new_id() -> str:
    return uuid.uuid4().hex


def new_api_key() -> str:
    return secrets.token_hex(24)


class Project(Base):
    """
    SQLAlchemy model for a project owning messages and logs.

    Table: projects
    """
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    api_key = Column(String, nullable=False, unique=True, default=new_api_key)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class Message(Base):
    """
    SQLAlchemy model for a single conversational message.

    Table: messages
    'metadata' is reserved on declarative classes, hence message_metadata.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    content = Column(String(1000), nullable=False)
    from_phone = Column(String, nullable=False, index=True)
    to_phone = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False, default="sms", index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    external_id = Column(String, nullable=True, index=True)
    provider = Column(String, nullable=False, default="other")
    cost = Column(Float, nullable=False, default=0.0)
    currency = Column(String, nullable=False, default="BRL")
    attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    scheduled_at = Column(DateTime, nullable=True, index=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    message_metadata = Column("metadata", JSON, nullable=False, default=dict)
    tags = Column(JSON, nullable=False, default=list)
    priority = Column(String, nullable=False, default="normal", index=True)
    template = Column(String, nullable=True)
    template_variables = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class Log(Base):
    """
    SQLAlchemy model for a structured log entry ingested for a project.

    Table: logs
    """
    __tablename__ = "logs"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, ForeignKey("projects.id"), nullable=False, index=True)
    source = Column(String, nullable=True, index=True)
    environment = Column(String, nullable=False, default="prod", index=True)
    level = Column(String, nullable=False, default="info", index=True)
    message = Column(Text, nullable=False)
    context = Column(Text, nullable=True)
    log_metadata = Column("metadata", JSON, nullable=False, default=dict)
    request = Column(JSON, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    occurred_at = Column(DateTime, nullable=False, default=utc_now, index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)
