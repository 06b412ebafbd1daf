from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.audit import write_audit
from card_timeline.config import settings
from card_timeline.errors import CategoryInUseError, NotFoundError
from card_timeline.milestones.store import commit_write
from card_timeline.models import Category, Milestone

SYSTEM_CATEGORY_ID = "cat-sistema"
SOURCE_CATEGORY_ID = "cat-1"
COMMENTS_CATEGORY_ID = "cat-10"
ACTIVITY_CATEGORY_ID = "cat-11"

DEFAULT_CATEGORIES: list[dict[str, str]] = [
  {"id": SYSTEM_CATEGORY_ID, "name": "System", "color": "#000000"},
  {"id": SOURCE_CATEGORY_ID, "name": "Trello attachments", "color": "#0079BF"},
  {"id": "cat-2", "name": "Meetings", "color": "#4CAF50"},
  {"id": "cat-3", "name": "Documents", "color": "#FF9800"},
  {"id": "cat-4", "name": "Deliverables", "color": "#9C27B0"},
  {"id": "cat-5", "name": "Permits", "color": "#F44336"},
  {"id": COMMENTS_CATEGORY_ID, "name": "Comments", "color": "#607D8B"},
  {"id": ACTIVITY_CATEGORY_ID, "name": "Card activity", "color": "#9E9E9E"},
]

DEFAULT_COLORS = ["#a3e635", "#22c55e", "#14b8a6", "#0ea5e9", "#4f46e5", "#8b5cf6", "#be185d", "#f97316", "#facc15"]


def category_doc(c: Category | dict[str, Any]) -> dict[str, str]:
  if isinstance(c, dict):
    return {"id": str(c.get("id") or ""), "name": str(c.get("name") or ""), "color": str(c.get("color") or "")}
  return {"id": c.id, "name": c.name, "color": c.color}


async def seed_default_categories(db: AsyncSession) -> bool:
  res = await db.execute(select(func.count()).select_from(Category))
  if (res.scalar_one() or 0) > 0:
    return False
  for pos, cat in enumerate(DEFAULT_CATEGORIES):
    db.add(Category(position=pos, **cat))
  await commit_write(db, path="categories", operation="create", request_data=DEFAULT_CATEGORIES)
  return True


async def list_categories(db: AsyncSession) -> list[dict[str, str]]:
  """Live categories, or the built-in defaults while the collection is still empty."""
  res = await db.execute(select(Category).order_by(Category.position.asc(), Category.created_at.asc()))
  live = [category_doc(c) for c in res.scalars().all()]
  return live or [dict(c) for c in DEFAULT_CATEGORIES]


def pick_category(categories: list[dict[str, str]], category_id: str) -> dict[str, str]:
  for c in categories:
    if c["id"] == category_id:
      return dict(c)
  for c in DEFAULT_CATEGORIES:
    if c["id"] == category_id:
      return dict(c)
  return {"id": category_id, "name": category_id, "color": "#000000"}


def source_category(categories: list[dict[str, str]]) -> dict[str, str]:
  keyword = (settings.source_system_keyword or "").strip().lower()
  if keyword:
    for c in categories:
      if keyword in c["name"].lower():
        return dict(c)
  return pick_category(categories, SOURCE_CATEGORY_ID)


def resync_category(doc: dict[str, Any], categories_by_id: dict[str, dict[str, str]]) -> dict[str, Any]:
  """Swap the embedded snapshot for the live category; keep the snapshot if it was deleted."""
  embedded = doc.get("category") or {}
  live = categories_by_id.get(str(embedded.get("id") or ""))
  if live:
    return {**doc, "category": dict(live)}
  return doc


async def require_category(db: AsyncSession, category_id: str) -> Category:
  c = await db.get(Category, category_id)
  if not c:
    raise NotFoundError(f"Category {category_id} not found")
  return c


async def create_category(db: AsyncSession, *, name: str, color: str | None = None) -> Category:
  res = await db.execute(select(func.count()).select_from(Category))
  count = res.scalar_one() or 0
  c = Category(name=name.strip(), color=color or DEFAULT_COLORS[count % len(DEFAULT_COLORS)], position=count)
  db.add(c)
  await db.flush()
  await write_audit(db, event_type="category.created", entity_type="Category", entity_id=c.id, payload={"name": c.name})
  await commit_write(db, path="categories", operation="create", request_data=category_doc(c))
  return c


async def update_category(db: AsyncSession, *, category_id: str, name: str | None = None, color: str | None = None) -> Category:
  c = await require_category(db, category_id)
  patch: dict[str, str] = {}
  new_name = (name or "").strip()
  if new_name and new_name != c.name:
    patch["name"] = new_name
  if color and color != c.color:
    patch["color"] = color
  if not patch:
    return c
  for k, v in patch.items():
    setattr(c, k, v)
  await write_audit(db, event_type="category.updated", entity_type="Category", entity_id=c.id, payload=patch)
  await commit_write(db, path=f"categories/{c.id}", operation="update", request_data=patch)
  return c


async def count_category_references(db: AsyncSession, category_id: str) -> int:
  res = await db.execute(select(Milestone.category))
  return sum(1 for cat in res.scalars().all() if isinstance(cat, dict) and cat.get("id") == category_id)


async def delete_category(db: AsyncSession, *, category_id: str) -> None:
  c = await require_category(db, category_id)
  used = await count_category_references(db, category_id)
  if used:
    raise CategoryInUseError(category_id=category_id, milestone_count=used)
  await db.delete(c)
  await write_audit(db, event_type="category.deleted", entity_type="Category", entity_id=category_id, payload={"name": c.name})
  await commit_write(db, path=f"categories/{category_id}", operation="delete")
