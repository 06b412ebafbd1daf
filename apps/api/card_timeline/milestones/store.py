"""
Document-style access to a project's milestone collection.

Milestones are addressed as `projects/<projectId>/milestones/<milestoneId>`. Every write goes
through `commit_write` or `WriteBatch.commit`, which turn database rejections into
StoreWriteError carrying the path and attempted operation.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.config import settings
from card_timeline.errors import NotFoundError, StoreWriteError
from card_timeline.models import Milestone, Project

logger = logging.getLogger(__name__)

MIRRORED_PREFIX = "milestone-"
LOCAL_PREFIX = "milestone-local-"
CREATION_PREFIX = "milestone-creation-"

_DOC_FIELDS = {
  "name": "name",
  "description": "description",
  "occurredAt": "occurred_at",
  "category": "category",
  "tags": "tags",
  "associatedFiles": "associated_files",
  "isImportant": "is_important",
  "history": "history",
}


def project_path(project_id: str) -> str:
  return f"projects/{project_id}"


def milestone_path(project_id: str, milestone_id: str | None = None) -> str:
  base = f"{project_path(project_id)}/milestones"
  return f"{base}/{milestone_id}" if milestone_id else base


def ensure_writable(project_id: str, *, operation: str, path: str, request_data: Any = None) -> None:
  if project_id == settings.training_card_id:
    raise StoreWriteError(path=path, operation=operation, request_data=request_data, reason="training project is read-only")


def milestone_doc(m: Milestone) -> dict[str, Any]:
  return {
    "id": m.id,
    "name": m.name,
    "description": m.description or "",
    "occurredAt": m.occurred_at,
    "category": dict(m.category or {}),
    "tags": list(m.tags or []),
    "associatedFiles": [dict(f) for f in (m.associated_files or [])],
    "isImportant": bool(m.is_important),
    "history": list(m.history or []),
  }


def _apply_doc(m: Milestone, doc: dict[str, Any]) -> None:
  for key, attr in _DOC_FIELDS.items():
    if key in doc:
      setattr(m, attr, doc[key])


async def commit_write(db: AsyncSession, *, path: str, operation: str, request_data: Any = None) -> None:
  try:
    await db.commit()
  except SQLAlchemyError as e:
    await db.rollback()
    logger.warning("Store %s on %s rejected: %s", operation, path, e.__class__.__name__)
    raise StoreWriteError(path=path, operation=operation, request_data=request_data, reason=e.__class__.__name__) from e


async def get_project(db: AsyncSession, project_id: str) -> Project | None:
  return await db.get(Project, project_id)


async def require_project(db: AsyncSession, project_id: str) -> Project:
  p = await get_project(db, project_id)
  if not p:
    raise NotFoundError(f"Project {project_id} not found; select its card first")
  return p


async def list_milestones(db: AsyncSession, project_id: str) -> list[Milestone]:
  res = await db.execute(select(Milestone).where(Milestone.project_id == project_id).order_by(Milestone.occurred_at.desc()))
  return list(res.scalars().all())


async def get_milestone(db: AsyncSession, project_id: str, milestone_id: str) -> Milestone | None:
  return await db.get(Milestone, (project_id, milestone_id))


async def require_milestone(db: AsyncSession, project_id: str, milestone_id: str) -> Milestone:
  m = await get_milestone(db, project_id, milestone_id)
  if not m:
    raise NotFoundError(f"Milestone {milestone_path(project_id, milestone_id)} not found")
  return m


@dataclass(frozen=True)
class StoredRef:
  id: str
  is_important: bool = False
  card_attachment_ids: frozenset[str] = field(default_factory=frozenset)


async def list_milestone_refs(db: AsyncSession, project_id: str) -> list[StoredRef]:
  res = await db.execute(
    select(Milestone.id, Milestone.is_important, Milestone.associated_files).where(Milestone.project_id == project_id)
  )
  out: list[StoredRef] = []
  for mid, important, files in res.all():
    att_ids = frozenset(
      str(f["sourceCardAttachmentId"]) for f in (files or []) if isinstance(f, dict) and f.get("sourceCardAttachmentId")
    )
    out.append(StoredRef(id=mid, is_important=bool(important), card_attachment_ids=att_ids))
  return out


async def next_local_id(db: AsyncSession, project_id: str) -> str:
  stamp = int(time.time() * 1000)
  while await get_milestone(db, project_id, f"{LOCAL_PREFIX}{stamp}") is not None:
    stamp += 1
  return f"{LOCAL_PREFIX}{stamp}"


class WriteBatch:
  """Creates and deletes applied in one transaction: all of them land or none do."""

  def __init__(self, db: AsyncSession, *, project_id: str) -> None:
    self._db = db
    self.project_id = project_id
    self._project: dict[str, Any] | None = None
    self._sets: list[dict[str, Any]] = []
    self._deletes: list[str] = []

  def __len__(self) -> int:
    return len(self._sets) + len(self._deletes) + (1 if self._project is not None else 0)

  def upsert_project(self, data: dict[str, Any]) -> None:
    self._project = dict(data)

  def set(self, doc: dict[str, Any]) -> None:
    self._sets.append(dict(doc))

  def delete(self, milestone_id: str) -> None:
    self._deletes.append(milestone_id)

  async def _apply(self) -> None:
    if self._project is not None:
      p = await self._db.get(Project, self.project_id)
      if p is None:
        self._db.add(Project(id=self.project_id, **self._project))
      else:
        for k, v in self._project.items():
          setattr(p, k, v)
    for doc in self._sets:
      m = await self._db.get(Milestone, (self.project_id, doc["id"]))
      if m is None:
        m = Milestone(project_id=self.project_id, id=doc["id"])
        self._db.add(m)
      _apply_doc(m, doc)
    if self._deletes:
      await self._db.execute(
        delete(Milestone).where(Milestone.project_id == self.project_id, Milestone.id.in_(self._deletes))
      )

  async def commit(self) -> None:
    path = milestone_path(self.project_id)
    ensure_writable(self.project_id, operation="write", path=path)
    try:
      await self._apply()
      await self._db.commit()
    except SQLAlchemyError as e:
      await self._db.rollback()
      logger.warning("Batch write on %s rejected: %s", path, e.__class__.__name__)
      raise StoreWriteError(
        path=path,
        operation="write",
        request_data={"set": [d["id"] for d in self._sets], "delete": list(self._deletes)},
        reason=e.__class__.__name__,
      ) from e
