from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.deps import get_db, get_reconcile_state, get_registry, get_session_id
from card_timeline.milestones.reconciler import CardRef, ReconcileState, SessionRegistry, reconcile_card
from card_timeline.schemas import CardSelectIn, ReconcileOut

router = APIRouter(tags=["cards"])


@router.post("/cards/{card_id}/select", response_model=ReconcileOut)
async def select_card(
  card_id: str,
  payload: CardSelectIn,
  state: ReconcileState = Depends(get_reconcile_state),
  db: AsyncSession = Depends(get_db),
) -> ReconcileOut:
  card = CardRef(id=card_id, name=payload.name, url=payload.url, desc=payload.desc)
  outcome = await reconcile_card(db, card=card, state=state)
  return ReconcileOut(
    cardId=outcome.card_id,
    status=outcome.status,
    created=outcome.created,
    deleted=outcome.deleted,
    runId=outcome.run_id,
  )


@router.post("/session/reset")
async def reset_session(
  session_id: str = Depends(get_session_id),
  registry: SessionRegistry = Depends(get_registry),
) -> dict:
  registry.drop(session_id)
  return {"ok": True}
