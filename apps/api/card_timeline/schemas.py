from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

_HEX_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


class CategoryOut(BaseModel):
  id: str
  name: str
  color: str


class CategoryCreateIn(BaseModel):
  name: str = Field(min_length=1, max_length=80)
  color: str | None = None

  @field_validator("name")
  @classmethod
  def _name_not_blank(cls, v: str) -> str:
    if not v.strip():
      raise ValueError("name must not be blank")
    return v.strip()

  @field_validator("color")
  @classmethod
  def _color_hex(cls, v: str | None) -> str | None:
    if v is None:
      return None
    if not _HEX_COLOR_RE.fullmatch(v):
      raise ValueError("color must look like #rrggbb")
    return v


class CategoryUpdateIn(BaseModel):
  name: str | None = Field(default=None, max_length=80)
  color: str | None = None

  @field_validator("color")
  @classmethod
  def _color_hex(cls, v: str | None) -> str | None:
    if v is None:
      return None
    if not _HEX_COLOR_RE.fullmatch(v):
      raise ValueError("color must look like #rrggbb")
    return v


class AssociatedFileOut(BaseModel):
  id: str
  name: str
  size: str
  type: Literal["image", "video", "audio", "document", "other"]
  url: str | None = None
  sourceCardAttachmentId: str | None = None
  sourceObjectStoreId: str | None = None


class MilestoneOut(BaseModel):
  id: str
  name: str
  description: str
  occurredAt: str
  category: CategoryOut
  tags: list[str]
  associatedFiles: list[AssociatedFileOut]
  isImportant: bool
  history: list[str]


class MilestoneUpdateIn(BaseModel):
  name: str | None = Field(default=None, min_length=1, max_length=200)
  description: str | None = None
  categoryId: str | None = None
  occurredOn: date | datetime | None = None
  toggleImportant: bool = False


class TagIn(BaseModel):
  tag: str = Field(min_length=1, max_length=60)


class FileRemoveIn(BaseModel):
  fileIds: list[str] = Field(min_length=1)


class ProjectOut(BaseModel):
  id: str
  name: str
  code: str | None = None
  url: str | None = None
  readOnly: bool = False


class CardSelectIn(BaseModel):
  name: str = Field(min_length=1)
  url: str | None = None
  desc: str | None = None


class ReconcileOut(BaseModel):
  cardId: str
  status: Literal["synced", "unchanged", "skipped", "read_only"]
  created: list[str]
  deleted: list[str]
  runId: str | None = None


class SyncRunOut(BaseModel):
  id: str
  projectId: str
  status: str
  createdCount: int
  deletedCount: int
  startedAt: datetime
  finishedAt: datetime | None
  log: list[dict[str, Any]]
  errorMessage: str | None


class AuditOut(BaseModel):
  id: str
  projectId: str | None
  eventType: str
  entityType: str
  entityId: str | None
  payload: dict[str, Any]
  createdAt: datetime
