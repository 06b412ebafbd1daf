from __future__ import annotations

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.db import SessionLocal
from card_timeline.milestones.reconciler import ReconcileState, SessionRegistry

SESSION_HEADER = "X-Session-Id"


async def get_db() -> AsyncSession:
  async with SessionLocal() as session:
    yield session


def get_session_id(x_session_id: str | None = Header(default=None, alias=SESSION_HEADER)) -> str:
  return (x_session_id or "").strip() or "default"


def get_registry(request: Request) -> SessionRegistry:
  registry = getattr(request.app.state, "sessions", None)
  if registry is None:
    registry = request.app.state.sessions = SessionRegistry()
  return registry


def get_reconcile_state(
  session_id: str = Depends(get_session_id),
  registry: SessionRegistry = Depends(get_registry),
) -> ReconcileState:
  return registry.get(session_id)
