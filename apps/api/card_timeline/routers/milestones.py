from __future__ import annotations

from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.deps import get_db
from card_timeline.errors import NotFoundError
from card_timeline.milestones import editor
from card_timeline.milestones.categories import list_categories, resync_category
from card_timeline.milestones.files import IncomingFile
from card_timeline.milestones.store import milestone_doc, require_milestone
from card_timeline.milestones.timeline import project_timeline
from card_timeline.models import Milestone
from card_timeline.schemas import FileRemoveIn, MilestoneOut, MilestoneUpdateIn, TagIn
from card_timeline.training import is_training, training_milestones

router = APIRouter(prefix="/projects/{project_id}/milestones", tags=["milestones"])


async def _out(db: AsyncSession, m: Milestone) -> MilestoneOut:
  categories = {c["id"]: c for c in await list_categories(db)}
  return MilestoneOut(**resync_category(milestone_doc(m), categories))


async def _incoming(files: list[UploadFile]) -> list[IncomingFile]:
  out: list[IncomingFile] = []
  for f in files:
    out.append(IncomingFile(name=f.filename or "file", content=await f.read(), mime_type=f.content_type))
  return out


@router.get("", response_model=list[MilestoneOut])
async def list_project_milestones(project_id: str, q: str | None = None, db: AsyncSession = Depends(get_db)) -> list[MilestoneOut]:
  return [MilestoneOut(**d) for d in await project_timeline(db, project_id, q=q)]


@router.post("", response_model=MilestoneOut)
async def create_milestone(
  project_id: str,
  name: str = Form(...),
  description: str = Form(...),
  categoryId: str | None = Form(default=None),
  occurredOn: date = Form(...),
  files: list[UploadFile] = File(default=[]),
  db: AsyncSession = Depends(get_db),
) -> MilestoneOut:
  m = await editor.create_manual_milestone(
    db,
    project_id=project_id,
    name=name,
    description=description,
    category_id=categoryId,
    occurred_on=occurredOn,
    files=await _incoming(files),
  )
  return await _out(db, m)


@router.get("/{milestone_id}", response_model=MilestoneOut)
async def get_milestone(project_id: str, milestone_id: str, db: AsyncSession = Depends(get_db)) -> MilestoneOut:
  if is_training(project_id):
    for d in training_milestones():
      if d["id"] == milestone_id:
        return MilestoneOut(**d)
    raise NotFoundError(f"Milestone {milestone_id} not found")
  return await _out(db, await require_milestone(db, project_id, milestone_id))


@router.patch("/{milestone_id}", response_model=MilestoneOut)
async def patch_milestone(
  project_id: str,
  milestone_id: str,
  payload: MilestoneUpdateIn,
  db: AsyncSession = Depends(get_db),
) -> MilestoneOut:
  ids: dict[str, Any] = {"project_id": project_id, "milestone_id": milestone_id}
  m: Milestone | None = None
  if payload.name is not None:
    m = await editor.rename(db, name=payload.name, **ids)
  if payload.description is not None:
    m = await editor.describe(db, description=payload.description, **ids)
  if payload.categoryId is not None:
    m = await editor.recategorize(db, category_id=payload.categoryId, **ids)
  if payload.occurredOn is not None:
    m = await editor.redate(db, value=payload.occurredOn, **ids)
  if payload.toggleImportant:
    m = await editor.toggle_important(db, **ids)
  if m is None:
    m = await require_milestone(db, project_id, milestone_id)
  return await _out(db, m)


@router.delete("/{milestone_id}")
async def delete_milestone(project_id: str, milestone_id: str, confirm: str | None = None, db: AsyncSession = Depends(get_db)) -> dict:
  await editor.delete_milestone(db, project_id=project_id, milestone_id=milestone_id, confirm=confirm)
  return {"ok": True}


@router.post("/{milestone_id}/tags", response_model=MilestoneOut)
async def post_tag(project_id: str, milestone_id: str, payload: TagIn, db: AsyncSession = Depends(get_db)) -> MilestoneOut:
  m = await editor.add_tag(db, project_id=project_id, milestone_id=milestone_id, tag=payload.tag)
  return await _out(db, m)


@router.delete("/{milestone_id}/tags/{tag}", response_model=MilestoneOut)
async def delete_tag(project_id: str, milestone_id: str, tag: str, db: AsyncSession = Depends(get_db)) -> MilestoneOut:
  m = await editor.remove_tag(db, project_id=project_id, milestone_id=milestone_id, tag=tag)
  return await _out(db, m)


@router.post("/{milestone_id}/files", response_model=MilestoneOut)
async def post_files(
  project_id: str,
  milestone_id: str,
  files: list[UploadFile] = File(...),
  db: AsyncSession = Depends(get_db),
) -> MilestoneOut:
  m = await editor.add_files(db, project_id=project_id, milestone_id=milestone_id, files=await _incoming(files))
  return await _out(db, m)


@router.post("/{milestone_id}/files/remove", response_model=MilestoneOut)
async def remove_files(project_id: str, milestone_id: str, payload: FileRemoveIn, db: AsyncSession = Depends(get_db)) -> MilestoneOut:
  m = await editor.remove_files(db, project_id=project_id, milestone_id=milestone_id, file_ids=payload.fileIds)
  return await _out(db, m)
