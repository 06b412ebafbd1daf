from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./card_timeline_test.db")
os.environ.setdefault("TRELLO_API_KEY", "test-key")
os.environ.setdefault("TRELLO_TOKEN", "test-token")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-secret")
os.environ.setdefault("GOOGLE_REFRESH_TOKEN", "test-refresh")
os.environ.setdefault("DRIVE_ROOT_FOLDER_ID", "root-folder")

from card_timeline.config import settings
from card_timeline.db import SessionLocal, engine, init_db
from card_timeline.main import app
from card_timeline.milestones import reconciler
from card_timeline.milestones.categories import seed_default_categories
from card_timeline.milestones.reconciler import SessionRegistry
from card_timeline.models import AuditEvent, Category, Milestone, Project, SyncRun

CARD_ID = "507f191e810c19729de860ea"
CARD_NAME = "ABC123 Villa Marina"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
  return "asyncio"


async def _reset_db() -> None:
  await init_db()
  async with SessionLocal() as db:
    await db.execute(delete(AuditEvent))
    await db.execute(delete(SyncRun))
    await db.execute(delete(Milestone))
    await db.execute(delete(Project))
    await db.execute(delete(Category))
    await db.commit()
    await seed_default_categories(db)
  await engine.dispose()


@pytest.fixture(autouse=True)
async def _clean_between_tests(anyio_backend) -> None:  # type: ignore[no-untyped-def]
  db_name = settings.database_url.rsplit("/", 1)[-1]
  if "test" not in db_name:
    raise RuntimeError(
      "Refusing to run destructive tests against non-test DB. "
      "Set DATABASE_URL to a *_test database (e.g. card_timeline_test)."
    )
  app.state.sessions = SessionRegistry()
  await _reset_db()
  yield
  await _reset_db()


@pytest.fixture
async def client() -> AsyncClient:
  transport = ASGITransport(app=app)
  async with AsyncClient(transport=transport, base_url="http://localhost") as c:
    yield c


def attachment(att_id: str, file_name: str, *, mime: str = "application/pdf", size: int = 2048, date: str = "2024-05-01T10:00:00.000Z") -> dict:
  return {
    "id": att_id,
    "fileName": file_name,
    "mimeType": mime,
    "bytes": size,
    "date": date,
    "url": f"https://trello.example/{att_id}/{file_name}",
  }


def comment_action(action_id: str, text: str, *, author: str = "Dana", date: str = "2024-05-02T09:00:00.000Z") -> dict:
  return {
    "id": action_id,
    "type": "commentCard",
    "date": date,
    "data": {"text": text},
    "memberCreator": {"fullName": author},
  }


def move_action(action_id: str, before: str, after: str, *, author: str = "Dana", date: str = "2024-05-03T09:00:00.000Z") -> dict:
  return {
    "id": action_id,
    "type": "updateCard",
    "date": date,
    "data": {"listBefore": {"name": before}, "listAfter": {"name": after}},
    "memberCreator": {"fullName": author},
  }


class FakeCardSource:
  """Stands in for the Trello fetches used by reconciliation; mutate `attachments`/`actions` between runs."""

  def __init__(self, attachments: list[dict] | None = None, actions: list[dict] | None = None) -> None:
    self.attachments = list(attachments or [])
    self.actions = list(actions or [])
    self.calls = 0
    self.error: Exception | None = None

  async def get_attachments(self, *, auth, card_id):  # type: ignore[no-untyped-def]
    self.calls += 1
    if self.error:
      raise self.error
    return [dict(a) for a in self.attachments]

  async def get_actions(self, *, auth, card_id, limit=1000):  # type: ignore[no-untyped-def]
    if self.error:
      raise self.error
    return [dict(a) for a in self.actions]


@pytest.fixture
def card_source(monkeypatch) -> FakeCardSource:  # type: ignore[no-untyped-def]
  src = FakeCardSource()
  monkeypatch.setattr(reconciler, "trello_get_card_attachments", src.get_attachments)
  monkeypatch.setattr(reconciler, "trello_get_card_actions", src.get_actions)
  return src


async def seed_project(project_id: str = CARD_ID, *, name: str = CARD_NAME, code: str | None = "ABC123") -> None:
  async with SessionLocal() as db:
    db.add(Project(id=project_id, name=name, code=code, url=None))
    await db.commit()


async def seed_milestone(project_id: str, milestone_id: str, **fields: Any) -> None:
  values: dict[str, Any] = {
    "name": "Site visit",
    "description": "Visit with the surveyor.",
    "occurred_at": "2024-05-01T07:00:00.000Z",
    "category": {"id": "cat-2", "name": "Meetings", "color": "#4CAF50"},
    "tags": [],
    "associated_files": [],
    "is_important": False,
    "history": [],
  }
  values.update(fields)
  async with SessionLocal() as db:
    db.add(Milestone(project_id=project_id, id=milestone_id, **values))
    await db.commit()


async def load_milestone(project_id: str, milestone_id: str) -> Milestone | None:
  async with SessionLocal() as db:
    return await db.get(Milestone, (project_id, milestone_id))
