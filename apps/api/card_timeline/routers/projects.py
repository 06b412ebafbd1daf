from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.deps import get_db
from card_timeline.milestones.store import require_project
from card_timeline.models import SyncRun
from card_timeline.schemas import ProjectOut, SyncRunOut
from card_timeline.training import is_training, training_project

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("/{project_id}", response_model=ProjectOut)
async def get_project(project_id: str, db: AsyncSession = Depends(get_db)) -> ProjectOut:
  if is_training(project_id):
    return ProjectOut(**training_project())
  p = await require_project(db, project_id)
  return ProjectOut(id=p.id, name=p.name, code=p.code, url=p.url)


@router.get("/{project_id}/sync-runs", response_model=list[SyncRunOut])
async def list_sync_runs(project_id: str, db: AsyncSession = Depends(get_db)) -> list[SyncRunOut]:
  res = await db.execute(
    select(SyncRun).where(SyncRun.project_id == project_id).order_by(SyncRun.started_at.desc()).limit(50)
  )
  return [
    SyncRunOut(
      id=r.id,
      projectId=r.project_id,
      status=r.status,
      createdCount=r.created_count,
      deletedCount=r.deleted_count,
      startedAt=r.started_at,
      finishedAt=r.finished_at,
      log=r.log or [],
      errorMessage=r.error_message,
    )
    for r in res.scalars().all()
  ]
