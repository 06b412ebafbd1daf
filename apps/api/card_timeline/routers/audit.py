from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.deps import get_db
from card_timeline.models import AuditEvent
from card_timeline.schemas import AuditOut

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=list[AuditOut])
async def list_audit(projectId: str | None = None, db: AsyncSession = Depends(get_db)) -> list[AuditOut]:
  q = select(AuditEvent).order_by(AuditEvent.created_at.desc()).limit(200)
  if projectId:
    q = q.where(AuditEvent.project_id == projectId)
  res = await db.execute(q)
  out = []
  for ev in res.scalars().all():
    out.append(
      AuditOut(
        id=ev.id,
        projectId=ev.project_id,
        eventType=ev.event_type,
        entityType=ev.entity_type,
        entityId=ev.entity_id,
        payload=ev.payload,
        createdAt=ev.created_at,
      )
    )
  return out
