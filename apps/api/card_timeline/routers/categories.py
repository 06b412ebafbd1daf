from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.deps import get_db
from card_timeline.milestones.categories import (
  category_doc,
  create_category,
  delete_category,
  list_categories,
  update_category,
)
from card_timeline.schemas import CategoryCreateIn, CategoryOut, CategoryUpdateIn

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("", response_model=list[CategoryOut])
async def get_categories(db: AsyncSession = Depends(get_db)) -> list[CategoryOut]:
  return [CategoryOut(**c) for c in await list_categories(db)]


@router.post("", response_model=CategoryOut)
async def post_category(payload: CategoryCreateIn, db: AsyncSession = Depends(get_db)) -> CategoryOut:
  c = await create_category(db, name=payload.name, color=payload.color)
  return CategoryOut(**category_doc(c))


@router.patch("/{category_id}", response_model=CategoryOut)
async def patch_category(category_id: str, payload: CategoryUpdateIn, db: AsyncSession = Depends(get_db)) -> CategoryOut:
  c = await update_category(db, category_id=category_id, name=payload.name, color=payload.color)
  return CategoryOut(**category_doc(c))


@router.delete("/{category_id}")
async def remove_category(category_id: str, db: AsyncSession = Depends(get_db)) -> dict:
  await delete_category(db, category_id=category_id)
  return {"ok": True}
