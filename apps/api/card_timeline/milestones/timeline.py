from __future__ import annotations

import unicodedata
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.milestones.categories import list_categories, resync_category
from card_timeline.milestones.store import list_milestones, milestone_doc
from card_timeline.training import is_training, training_milestones


def fold(text: str) -> str:
  """Lower-case and strip accents so "Réunion" matches "reunion"."""
  decomposed = unicodedata.normalize("NFD", text or "")
  return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).casefold()


def matches(doc: dict[str, Any], query: str) -> bool:
  needle = fold(query.strip())
  if not needle:
    return True
  haystack = [
    doc.get("name") or "",
    doc.get("description") or "",
    (doc.get("category") or {}).get("name") or "",
    *(doc.get("tags") or []),
  ]
  return any(needle in fold(h) for h in haystack)


async def project_timeline(db: AsyncSession, project_id: str, *, q: str | None = None) -> list[dict[str, Any]]:
  if is_training(project_id):
    docs = training_milestones()
  else:
    categories = {c["id"]: c for c in await list_categories(db)}
    docs = [resync_category(milestone_doc(m), categories) for m in await list_milestones(db, project_id)]
  if q:
    docs = [d for d in docs if matches(d, q)]
  docs.sort(key=lambda d: d.get("occurredAt") or "", reverse=True)
  return docs
