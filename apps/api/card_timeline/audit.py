from __future__ import annotations

from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.models import AuditEvent


async def write_audit(
  db: AsyncSession,
  *,
  event_type: str,
  entity_type: str,
  entity_id: str | None,
  project_id: str | None = None,
  payload: dict[str, Any] | None = None,
) -> None:
  safe_payload = jsonable_encoder(payload or {})
  ev = AuditEvent(
    project_id=project_id,
    event_type=event_type,
    entity_type=entity_type,
    entity_id=entity_id,
    payload=safe_payload,
  )
  db.add(ev)
