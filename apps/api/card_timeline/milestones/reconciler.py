"""
One-way reconciliation of a Trello card into its project's milestone collection.

A run derives candidate milestones from the card (its creation date, its attachments and
two kinds of activity), diffs their deterministic ids against what is stored and applies
the delta as a single batch. Each card is reconciled at most once per session; a failed
run releases the card so re-selecting it retries from scratch.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.audit import write_audit
from card_timeline.config import settings
from card_timeline.errors import SourceFetchError, StoreWriteError
from card_timeline.milestones.categories import (
  ACTIVITY_CATEGORY_ID,
  COMMENTS_CATEGORY_ID,
  SYSTEM_CATEGORY_ID,
  list_categories,
  pick_category,
  source_category,
)
from card_timeline.milestones.dates import card_creation_date, display_date, history_entry, iso_utc, parse_iso
from card_timeline.milestones.files import associated_file
from card_timeline.milestones.store import (
  CREATION_PREFIX,
  LOCAL_PREFIX,
  MIRRORED_PREFIX,
  StoredRef,
  WriteBatch,
  get_project,
  list_milestone_refs,
)
from card_timeline.models import SyncRun
from card_timeline.trello.client import (
  TrelloAuth,
  trello_auth_from_settings,
  trello_get_card_actions,
  trello_get_card_attachments,
)

logger = logging.getLogger(__name__)

PROJECT_CODE_RE = re.compile(r"\b([A-Z]{3}\d{3})\b", re.IGNORECASE)


def project_code(card_name: str) -> str | None:
  m = PROJECT_CODE_RE.search(card_name or "")
  return m.group(0).upper() if m else None


@dataclass(frozen=True)
class CardRef:
  id: str
  name: str
  url: str | None = None
  desc: str | None = None


@dataclass(frozen=True)
class CommentPosted:
  id: str
  date: str | None
  author: str
  text: str


@dataclass(frozen=True)
class CardMoved:
  id: str
  date: str | None
  author: str
  list_before: str
  list_after: str


@dataclass(frozen=True)
class UnrecognizedActivity:
  """Any other action kind. Produces no milestone."""

  id: str
  type: str


Activity = Union[CommentPosted, CardMoved, UnrecognizedActivity]


def _author(raw: dict[str, Any]) -> str:
  member = raw.get("memberCreator") or {}
  if isinstance(member, dict):
    name = member.get("fullName") or member.get("username")
    if name:
      return str(name)
  return "Unknown"


def parse_activity(raw: dict[str, Any]) -> Activity:
  action_id = str(raw.get("id") or "")
  kind = str(raw.get("type") or "")
  data = raw.get("data") or {}
  if not isinstance(data, dict):
    data = {}
  if kind == "commentCard":
    text = data.get("text")
    if isinstance(text, str) and text.strip():
      return CommentPosted(id=action_id, date=raw.get("date"), author=_author(raw), text=text)
  elif kind == "updateCard":
    before = data.get("listBefore")
    after = data.get("listAfter")
    if isinstance(before, dict) and isinstance(after, dict):
      return CardMoved(
        id=action_id,
        date=raw.get("date"),
        author=_author(raw),
        list_before=str(before.get("name") or ""),
        list_after=str(after.get("name") or ""),
      )
  return UnrecognizedActivity(id=action_id, type=kind)


@dataclass(frozen=True)
class Candidate:
  doc: dict[str, Any]
  kind: Literal["creation", "attachment", "comment", "move"]
  source_id: str

  @property
  def id(self) -> str:
    return self.doc["id"]


def _occurred(date_value: Any, fallback_id: str) -> str:
  try:
    dt = parse_iso(date_value) if date_value else None
  except (ValueError, OverflowError):
    logger.warning("Unparseable date %r on %s; using its id timestamp", date_value, fallback_id)
    dt = None
  if dt is None:
    try:
      dt = card_creation_date(fallback_id)
    except ValueError:
      dt = datetime.now(timezone.utc)
  return iso_utc(dt)


def creation_candidate(card: CardRef, categories: list[dict[str, str]], *, now: datetime | None = None) -> Candidate | None:
  try:
    created = card_creation_date(card.id)
  except ValueError:
    logger.warning("Card %s carries no creation timestamp; skipping creation milestone", card.id)
    return None
  doc = {
    "id": f"{CREATION_PREFIX}{card.id}",
    "name": "Entered the system",
    "description": "The Trello card was created on this date.",
    "occurredAt": iso_utc(created),
    "category": pick_category(categories, SYSTEM_CATEGORY_ID),
    "tags": ["system", "creation"],
    "associatedFiles": [],
    "isImportant": False,
    "history": [history_entry("Creation milestone generated automatically.", now=now)],
  }
  return Candidate(doc=doc, kind="creation", source_id=card.id)


def attachment_candidate(att: dict[str, Any], category: dict[str, str], *, now: datetime | None = None) -> Candidate:
  att_id = str(att["id"])
  occurred = _occurred(att.get("date"), att_id)
  doc = {
    "id": f"{MIRRORED_PREFIX}{att_id}",
    "name": att.get("fileName") or att_id,
    "description": f"File attached to the Trello card on {display_date(parse_iso(occurred))}.",
    "occurredAt": occurred,
    "category": dict(category),
    "tags": ["attachment"],
    "associatedFiles": [
      associated_file(
        file_id=att_id,
        name=att.get("fileName") or att_id,
        size_bytes=int(att.get("bytes") or 0),
        mime_type=att.get("mimeType"),
        url=att.get("url"),
        card_attachment_id=att_id,
      )
    ],
    "isImportant": False,
    "history": [history_entry("Created from Trello.", now=now)],
  }
  return Candidate(doc=doc, kind="attachment", source_id=att_id)


def activity_candidate(activity: Activity, categories: list[dict[str, str]], *, now: datetime | None = None) -> Candidate | None:
  if isinstance(activity, CommentPosted):
    doc = {
      "id": f"{MIRRORED_PREFIX}{activity.id}",
      "name": f"Comment by {activity.author}",
      "description": activity.text,
      "occurredAt": _occurred(activity.date, activity.id),
      "category": pick_category(categories, COMMENTS_CATEGORY_ID),
      "tags": ["comment"],
      "associatedFiles": [],
      "isImportant": False,
      "history": [history_entry("Created from Trello activity.", now=now)],
    }
    return Candidate(doc=doc, kind="comment", source_id=activity.id)
  if isinstance(activity, CardMoved):
    doc = {
      "id": f"{MIRRORED_PREFIX}{activity.id}",
      "name": "Card moved",
      "description": f'Moved from "{activity.list_before}" to "{activity.list_after}" by {activity.author}.',
      "occurredAt": _occurred(activity.date, activity.id),
      "category": pick_category(categories, ACTIVITY_CATEGORY_ID),
      "tags": ["activity", "move"],
      "associatedFiles": [],
      "isImportant": False,
      "history": [history_entry("Created from Trello activity.", now=now)],
    }
    return Candidate(doc=doc, kind="move", source_id=activity.id)
  return None


def build_candidates(
  card: CardRef,
  attachments: list[dict[str, Any]],
  actions: list[dict[str, Any]],
  categories: list[dict[str, str]],
  *,
  now: datetime | None = None,
) -> list[Candidate]:
  out: list[Candidate] = []
  creation = creation_candidate(card, categories, now=now)
  if creation:
    out.append(creation)
  att_category = source_category(categories)
  for att in attachments:
    if att.get("id"):
      out.append(attachment_candidate(att, att_category, now=now))
  for raw in actions:
    c = activity_candidate(parse_activity(raw), categories, now=now)
    if c:
      out.append(c)
  return out


@dataclass
class ReconcileDelta:
  creates: list[dict[str, Any]] = field(default_factory=list)
  deletes: list[str] = field(default_factory=list)

  @property
  def empty(self) -> bool:
    return not self.creates and not self.deletes


def is_mirrored_id(milestone_id: str) -> bool:
  return (
    milestone_id.startswith(MIRRORED_PREFIX)
    and not milestone_id.startswith(LOCAL_PREFIX)
    and not milestone_id.startswith(CREATION_PREFIX)
  )


def compute_delta(
  candidates: list[Candidate],
  existing: list[StoredRef],
  source_ids: set[str],
  *,
  remove_stale: bool = True,
) -> ReconcileDelta:
  """Pure set difference over ids; the order of candidates and refs does not matter."""
  existing_ids = {r.id for r in existing}
  linked_attachments: set[str] = set()
  for r in existing:
    linked_attachments |= r.card_attachment_ids

  delta = ReconcileDelta()
  seen: set[str] = set()
  for c in candidates:
    if c.id in existing_ids or c.id in seen:
      continue
    if c.kind == "attachment" and c.source_id in linked_attachments:
      continue
    seen.add(c.id)
    delta.creates.append(c.doc)

  if remove_stale:
    for r in existing:
      if not is_mirrored_id(r.id) or r.is_important:
        continue
      if r.id[len(MIRRORED_PREFIX):] not in source_ids:
        delta.deletes.append(r.id)
  delta.creates.sort(key=lambda d: d["id"])
  delta.deletes.sort()
  return delta


class ReconcileState:
  """Which cards this session has reconciled (or is reconciling right now)."""

  def __init__(self) -> None:
    self._cards: dict[str, str] = {}

  def claim(self, card_id: str) -> bool:
    # Check-and-set with no await in between.
    if card_id in self._cards:
      return False
    self._cards[card_id] = "running"
    return True

  def complete(self, card_id: str) -> None:
    self._cards[card_id] = "done"

  def release(self, card_id: str) -> None:
    self._cards.pop(card_id, None)

  def reset(self) -> None:
    self._cards.clear()

  def status(self, card_id: str) -> str | None:
    return self._cards.get(card_id)


class SessionRegistry:
  """Per-session reconcile state, least recently used sessions evicted past `max_sessions`."""

  def __init__(self, max_sessions: int | None = None) -> None:
    self.max_sessions = max(1, max_sessions or settings.max_reconcile_sessions)
    self._states: OrderedDict[str, ReconcileState] = OrderedDict()

  def __len__(self) -> int:
    return len(self._states)

  def get(self, session_id: str) -> ReconcileState:
    state = self._states.get(session_id)
    if state is None:
      state = self._states[session_id] = ReconcileState()
      while len(self._states) > self.max_sessions:
        evicted, _ = self._states.popitem(last=False)
        logger.debug("Evicted reconcile state for session %s", evicted)
    else:
      self._states.move_to_end(session_id)
    return state

  def drop(self, session_id: str) -> None:
    self._states.pop(session_id, None)


@dataclass
class ReconcileOutcome:
  card_id: str
  status: Literal["synced", "unchanged", "skipped", "read_only"]
  created: list[str] = field(default_factory=list)
  deleted: list[str] = field(default_factory=list)
  run_id: str | None = None


def _log(run: SyncRun, level: str, message: str) -> None:
  run.log = list(run.log or []) + [{"at": datetime.now(timezone.utc).isoformat(), "level": level, "message": message}]


def _error_text(exc: Exception) -> str:
  message = str(exc).strip()
  if message:
    return f"{exc.__class__.__name__}: {message}"
  return exc.__class__.__name__


async def _record_failed_run(db: AsyncSession, *, card_id: str, started: datetime, exc: Exception) -> None:
  err = _error_text(exc)
  run = SyncRun(id=str(uuid.uuid4()), project_id=card_id, status="error", started_at=started, finished_at=datetime.now(timezone.utc), log=[])
  run.error_message = err
  _log(run, "error", f"Reconciliation error: {err}")
  db.add(run)
  await write_audit(db, event_type="reconcile.error", entity_type="SyncRun", entity_id=run.id, project_id=card_id, payload={"error": err})
  try:
    await db.commit()
  except SQLAlchemyError as e:
    await db.rollback()
    logger.warning("Could not record failed reconciliation for %s: %s", card_id, e.__class__.__name__)


async def _fetch_card(auth: TrelloAuth, card_id: str) -> tuple[list[dict], list[dict]]:
  # Both fetches always finish; the first failure is raised once both are collected.
  results = await asyncio.gather(
    trello_get_card_attachments(auth=auth, card_id=card_id),
    trello_get_card_actions(auth=auth, card_id=card_id),
    return_exceptions=True,
  )
  for r in results:
    if isinstance(r, BaseException):
      raise r
  attachments, actions = results
  return attachments, actions


async def _apply_card(
  db: AsyncSession,
  *,
  card: CardRef,
  auth: TrelloAuth | None,
  started: datetime,
  now: datetime | None,
) -> ReconcileOutcome:
  auth = auth or trello_auth_from_settings()
  attachments, actions = await _fetch_card(auth, card.id)

  categories = await list_categories(db)
  existing = await list_milestone_refs(db, card.id)
  project = await get_project(db, card.id)

  candidates = build_candidates(card, attachments, actions, categories, now=now)
  source_ids = {card.id, *(str(a["id"]) for a in attachments if a.get("id")), *(str(a["id"]) for a in actions)}
  delta = compute_delta(candidates, existing, source_ids, remove_stale=settings.reconcile_remove_stale)

  batch = WriteBatch(db, project_id=card.id)
  project_data: dict[str, Any] = {"name": card.name, "code": project_code(card.name)}
  if card.url is not None:
    project_data["url"] = card.url
  if project is None or any(getattr(project, k) != v for k, v in project_data.items()):
    batch.upsert_project(project_data)
  for doc in delta.creates:
    batch.set(doc)
  for mid in delta.deletes:
    batch.delete(mid)

  if not len(batch):
    logger.info("Card %s already up to date", card.id)
    return ReconcileOutcome(card_id=card.id, status="unchanged")

  run = SyncRun(id=str(uuid.uuid4()), project_id=card.id, status="success", started_at=started, log=[])
  run.created_count = len(delta.creates)
  run.deleted_count = len(delta.deletes)
  run.finished_at = datetime.now(timezone.utc)
  _log(run, "info", f"Done created={run.created_count} deleted={run.deleted_count}")
  db.add(run)
  await write_audit(
    db,
    event_type="reconcile.completed",
    entity_type="SyncRun",
    entity_id=run.id,
    project_id=card.id,
    payload={"created": [d["id"] for d in delta.creates], "deleted": list(delta.deletes)},
  )
  await batch.commit()

  logger.info("Card %s reconciled: %d created, %d deleted", card.id, len(delta.creates), len(delta.deletes))
  return ReconcileOutcome(
    card_id=card.id,
    status="synced",
    created=[d["id"] for d in delta.creates],
    deleted=list(delta.deletes),
    run_id=run.id,
  )


async def reconcile_card(
  db: AsyncSession,
  *,
  card: CardRef,
  state: ReconcileState,
  auth: TrelloAuth | None = None,
  now: datetime | None = None,
) -> ReconcileOutcome:
  if card.id == settings.training_card_id:
    return ReconcileOutcome(card_id=card.id, status="read_only")
  if not state.claim(card.id):
    logger.debug("Card %s already reconciled in this session", card.id)
    return ReconcileOutcome(card_id=card.id, status="skipped")

  started = datetime.now(timezone.utc)
  logger.info("Reconciling card %s", card.id)
  try:
    outcome = await _apply_card(db, card=card, auth=auth, started=started, now=now)
  except (SourceFetchError, StoreWriteError) as e:
    state.release(card.id)
    logger.warning("Reconciliation of %s aborted: %s", card.id, e.message)
    await _record_failed_run(db, card_id=card.id, started=started, exc=e)
    raise
  except BaseException:
    # Any other failure still frees the card so re-selecting it retries.
    state.release(card.id)
    logger.exception("Reconciliation of %s failed unexpectedly", card.id)
    raise

  state.complete(card.id)
  return outcome
