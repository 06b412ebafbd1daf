from __future__ import annotations

import pytest
from httpx import AsyncClient

from card_timeline.db import SessionLocal
from card_timeline.milestones.categories import DEFAULT_COLORS, resync_category, seed_default_categories

from conftest import CARD_ID, seed_milestone, seed_project


@pytest.mark.anyio
async def test_default_categories_are_seeded_once(client: AsyncClient) -> None:
  r = await client.get("/categories")
  assert r.status_code == 200, r.text
  ids = [c["id"] for c in r.json()]
  assert ids[0] == "cat-sistema"
  assert {"cat-1", "cat-10", "cat-11"} <= set(ids)

  async with SessionLocal() as db:
    assert await seed_default_categories(db) is False


@pytest.mark.anyio
async def test_create_rename_and_recolor(client: AsyncClient) -> None:
  r = await client.post("/categories", json={"name": "  Inspections "})
  assert r.status_code == 200, r.text
  created = r.json()
  assert created["name"] == "Inspections"
  assert created["color"] in DEFAULT_COLORS

  r = await client.patch(f"/categories/{created['id']}", json={"name": "   ", "color": "#123456"})
  assert r.status_code == 200, r.text
  assert r.json() == {"id": created["id"], "name": "Inspections", "color": "#123456"}

  r = await client.post("/categories", json={"name": "Bad", "color": "red"})
  assert r.status_code == 422


@pytest.mark.anyio
async def test_delete_is_refused_while_a_milestone_uses_the_category(client: AsyncClient) -> None:
  await seed_project()
  await seed_milestone(CARD_ID, "milestone-local-1", category={"id": "cat-2", "name": "Meetings", "color": "#4CAF50"})
  before = (await client.get("/categories")).json()

  r = await client.delete("/categories/cat-2")
  assert r.status_code == 409, r.text
  body = r.json()
  assert body["detail"]["milestoneCount"] == 1
  assert body["notification"]["title"] == "Category in use"
  assert (await client.get("/categories")).json() == before

  r = await client.delete("/categories/cat-3")
  assert r.status_code == 200, r.text
  assert "cat-3" not in [c["id"] for c in (await client.get("/categories")).json()]


@pytest.mark.anyio
async def test_unknown_category_is_404(client: AsyncClient) -> None:
  r = await client.patch("/categories/cat-nope", json={"name": "x"})
  assert r.status_code == 404
  assert r.json()["notification"]["variant"] == "destructive"


def test_resync_prefers_live_category_and_keeps_snapshot_for_deleted_ones() -> None:
  live = {"cat-2": {"id": "cat-2", "name": "Client meetings", "color": "#000001"}}
  doc = {"id": "m", "category": {"id": "cat-2", "name": "Meetings", "color": "#4CAF50"}}
  assert resync_category(doc, live)["category"]["name"] == "Client meetings"
  gone = {"id": "m", "category": {"id": "cat-old", "name": "Old", "color": "#ffffff"}}
  assert resync_category(gone, live) == gone
