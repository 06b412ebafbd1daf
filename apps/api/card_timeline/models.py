from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
  return datetime.now(timezone.utc)


class Base(DeclarativeBase):
  pass


class Project(Base):
  __tablename__ = "projects"

  id: Mapped[str] = mapped_column(String, primary_key=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  code: Mapped[str | None] = mapped_column(String, nullable=True)
  url: Mapped[str | None] = mapped_column(String, nullable=True)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class Category(Base):
  __tablename__ = "categories"

  id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: f"cat-{uuid.uuid4().hex[:12]}")
  name: Mapped[str] = mapped_column(String, nullable=False)
  color: Mapped[str] = mapped_column(String, nullable=False)
  position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Milestone(Base):
  __tablename__ = "milestones"

  # Ids are unique within a project's collection only.
  project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.id"), primary_key=True)
  id: Mapped[str] = mapped_column(String, primary_key=True)
  name: Mapped[str] = mapped_column(String, nullable=False)
  description: Mapped[str] = mapped_column(Text, nullable=False, default="")
  occurred_at: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
  category: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
  associated_files: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
  is_important: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
  history: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class AuditEvent(Base):
  __tablename__ = "audit_events"

  id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
  project_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
  event_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_type: Mapped[str] = mapped_column(String, nullable=False)
  entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
  payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
  created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class SyncRun(Base):
  __tablename__ = "sync_runs"

  id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
  project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
  status: Mapped[str] = mapped_column(String, nullable=False, default="success")
  created_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  deleted_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
  started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
  finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
  log: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
  error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
