"""
Field-level edits on a single milestone.

Every operation refuses writes to the training project, skips no-op changes, appends exactly
one history line and persists the row in one commit. File add/remove also talk to Trello and
Drive; remote calls happen before the local write so a failed upload leaves the milestone as
it was.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from card_timeline.audit import write_audit
from card_timeline.config import settings
from card_timeline.drive.client import DriveAuth, drive_auth_from_settings, drive_delete_file, drive_upload_file
from card_timeline.errors import ObjectStoreError, SourceFetchError, TrelloApiError, ValidationError
from card_timeline.milestones.categories import category_doc, require_category
from card_timeline.milestones.dates import display_date, history_entry, iso_utc, normalize_occurred_at, parse_iso
from card_timeline.milestones.files import IncomingFile, associated_file
from card_timeline.milestones.store import (
  commit_write,
  ensure_writable,
  milestone_doc,
  milestone_path,
  next_local_id,
  require_milestone,
  require_project,
)
from card_timeline.models import Milestone
from card_timeline.trello.client import (
  TrelloAuth,
  trello_attach_url,
  trello_auth_from_settings,
  trello_delete_attachment,
  trello_get_card_attachments,
  trello_upload_attachment,
)

logger = logging.getLogger(__name__)

CONFIRM_WORD = "delete"
MIN_NAME_LENGTH = 5
MIN_DESCRIPTION_LENGTH = 10


async def _load(db: AsyncSession, project_id: str, milestone_id: str, operation: str) -> Milestone:
  ensure_writable(project_id, operation=operation, path=milestone_path(project_id, milestone_id))
  return await require_milestone(db, project_id, milestone_id)


async def _save(
  db: AsyncSession,
  m: Milestone,
  *,
  action: str,
  event_type: str,
  payload: dict[str, Any],
  now: datetime | None = None,
) -> Milestone:
  m.history = [*(m.history or []), history_entry(action, now=now)]
  await write_audit(
    db,
    event_type=event_type,
    entity_type="Milestone",
    entity_id=m.id,
    project_id=m.project_id,
    payload=payload,
  )
  await commit_write(db, path=milestone_path(m.project_id, m.id), operation="update", request_data=payload)
  return m


async def rename(db: AsyncSession, *, project_id: str, milestone_id: str, name: str, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  new = (name or "").strip()
  if not new:
    raise ValidationError("Name is required")
  if new == m.name:
    return m
  old = m.name
  m.name = new
  return await _save(db, m, action=f'Name changed from "{old}" to "{new}".', event_type="milestone.renamed", payload={"from": old, "to": new}, now=now)


async def describe(db: AsyncSession, *, project_id: str, milestone_id: str, description: str, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  new = description or ""
  if new == (m.description or ""):
    return m
  m.description = new
  return await _save(db, m, action="Description updated.", event_type="milestone.described", payload={"description": new}, now=now)


async def recategorize(db: AsyncSession, *, project_id: str, milestone_id: str, category_id: str, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  current = m.category or {}
  if current.get("id") == category_id:
    return m
  cat = category_doc(await require_category(db, category_id))
  m.category = cat
  return await _save(
    db,
    m,
    action=f'Category changed from "{current.get("name") or "none"}" to "{cat["name"]}".',
    event_type="milestone.recategorized",
    payload={"from": current.get("id"), "to": cat["id"]},
    now=now,
  )


async def redate(db: AsyncSession, *, project_id: str, milestone_id: str, value: date | datetime, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  new = iso_utc(normalize_occurred_at(value, now=now))
  if new == m.occurred_at:
    return m
  old = m.occurred_at
  m.occurred_at = new
  old_dt = parse_iso(old)
  old_label = display_date(old_dt) if old_dt else "unknown"
  return await _save(
    db,
    m,
    action=f"Date changed from {old_label} to {display_date(parse_iso(new))}.",
    event_type="milestone.redated",
    payload={"from": old, "to": new},
    now=now,
  )


async def add_tag(db: AsyncSession, *, project_id: str, milestone_id: str, tag: str, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  t = (tag or "").strip()
  if not t:
    raise ValidationError("Tag must not be empty")
  if t in (m.tags or []):
    return m
  m.tags = [*(m.tags or []), t]
  return await _save(db, m, action=f'Tag "{t}" added.', event_type="milestone.tag_added", payload={"tag": t}, now=now)


async def remove_tag(db: AsyncSession, *, project_id: str, milestone_id: str, tag: str, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  if tag not in (m.tags or []):
    return m
  m.tags = [x for x in m.tags if x != tag]
  return await _save(db, m, action=f'Tag "{tag}" removed.', event_type="milestone.tag_removed", payload={"tag": tag}, now=now)


async def toggle_important(db: AsyncSession, *, project_id: str, milestone_id: str, now: datetime | None = None) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  m.is_important = not bool(m.is_important)
  action = "Marked as important." if m.is_important else "Unmarked as important."
  return await _save(db, m, action=action, event_type="milestone.importance_toggled", payload={"isImportant": m.is_important}, now=now)


async def route_uploads(
  *,
  card_id: str,
  project_code: str | None,
  files: list[IncomingFile],
  trello_auth: TrelloAuth | None = None,
  drive_auth: DriveAuth | None = None,
) -> list[dict[str, Any]]:
  """
  Push files to their remote home and return the AssociatedFile records linking them.

  A file whose name matches an attachment already on the card reuses it. Files under the
  large-file threshold are uploaded to the card; bigger ones go to Drive and the share link
  is attached to the card instead.
  """
  if not files:
    return []
  trello_auth = trello_auth or trello_auth_from_settings()
  existing = {a["fileName"]: a for a in await trello_get_card_attachments(auth=trello_auth, card_id=card_id)}

  out: list[dict[str, Any]] = []
  for f in files:
    att = existing.get(f.name)
    if att:
      logger.info("Reusing card attachment %s for %s", att["id"], f.name)
      out.append(
        associated_file(
          file_id=att["id"],
          name=f.name,
          size_bytes=att.get("bytes") or f.size,
          mime_type=att.get("mimeType") or f.mime_type,
          url=att.get("url"),
          card_attachment_id=att["id"],
        )
      )
      continue

    if f.size < settings.large_file_threshold_bytes:
      created = await trello_upload_attachment(
        auth=trello_auth, card_id=card_id, file_name=f.name, content=f.content, mime_type=f.mime_type
      )
      att_id = str(created["id"])
      out.append(
        associated_file(
          file_id=att_id,
          name=f.name,
          size_bytes=f.size,
          mime_type=f.mime_type,
          url=created.get("url"),
          card_attachment_id=att_id,
        )
      )
      continue

    drive_auth = drive_auth or drive_auth_from_settings()
    logger.info("Sending %s (%d bytes) to Drive", f.name, f.size)
    stored = await drive_upload_file(
      auth=drive_auth, file_name=f.name, mime_type=f.mime_type, content=f.content, folder_hint=project_code
    )
    link_att = await trello_attach_url(auth=trello_auth, card_id=card_id, name=f.name, url=stored["link"])
    out.append(
      associated_file(
        file_id=stored["id"],
        name=f.name,
        size_bytes=f.size,
        mime_type=f.mime_type,
        url=stored["link"],
        card_attachment_id=str((link_att or {}).get("id") or "") or None,
        object_store_id=stored["id"],
      )
    )
  return out


async def add_files(
  db: AsyncSession,
  *,
  project_id: str,
  milestone_id: str,
  files: list[IncomingFile],
  trello_auth: TrelloAuth | None = None,
  drive_auth: DriveAuth | None = None,
  now: datetime | None = None,
) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  project = await require_project(db, project_id)
  linked = {f.get("name") for f in (m.associated_files or [])}
  fresh = [f for f in files if f.name not in linked]
  if not fresh:
    return m

  records = await route_uploads(
    card_id=project_id, project_code=project.code, files=fresh, trello_auth=trello_auth, drive_auth=drive_auth
  )
  m.associated_files = [*(m.associated_files or []), *records]
  names = ", ".join(r["name"] for r in records)
  return await _save(
    db,
    m,
    action=f"{len(records)} file(s) added: {names}.",
    event_type="milestone.files_added",
    payload={"files": [r["id"] for r in records]},
    now=now,
  )


def _is_gone(exc: Exception) -> bool:
  return getattr(exc, "status_code", None) == 404


async def _referenced_elsewhere(db: AsyncSession, *, project_id: str, milestone_id: str, attachment_id: str) -> bool:
  res = await db.execute(
    select(Milestone.associated_files).where(Milestone.project_id == project_id, Milestone.id != milestone_id)
  )
  for files in res.scalars().all():
    for f in files or []:
      if isinstance(f, dict) and f.get("sourceCardAttachmentId") == attachment_id:
        return True
  return False


async def remove_files(
  db: AsyncSession,
  *,
  project_id: str,
  milestone_id: str,
  file_ids: list[str],
  trello_auth: TrelloAuth | None = None,
  drive_auth: DriveAuth | None = None,
  now: datetime | None = None,
) -> Milestone:
  m = await _load(db, project_id, milestone_id, "update")
  wanted = set(file_ids)
  doomed = [f for f in (m.associated_files or []) if f.get("id") in wanted]
  if not doomed:
    return m

  removed: list[dict[str, Any]] = []
  try:
    for f in doomed:
      store_id = f.get("sourceObjectStoreId")
      if store_id:
        drive_auth = drive_auth or drive_auth_from_settings()
        try:
          await drive_delete_file(auth=drive_auth, file_id=store_id)
        except ObjectStoreError as e:
          if not _is_gone(e):
            raise
          logger.info("Drive file %s already gone", store_id)
      att_id = f.get("sourceCardAttachmentId")
      if att_id and not await _referenced_elsewhere(db, project_id=project_id, milestone_id=milestone_id, attachment_id=att_id):
        trello_auth = trello_auth or trello_auth_from_settings()
        try:
          await trello_delete_attachment(auth=trello_auth, card_id=project_id, attachment_id=att_id)
        except TrelloApiError as e:
          if not _is_gone(e):
            raise
          logger.info("Card attachment %s already gone", att_id)
      removed.append(f)
  except (ObjectStoreError, SourceFetchError):
    # Files already deleted remotely must not stay listed.
    if removed:
      logger.warning("File removal on %s stopped after %d of %d file(s)", milestone_id, len(removed), len(doomed))
      await _drop_files(db, m, removed, now=now)
    raise

  return await _drop_files(db, m, doomed, now=now)


async def _drop_files(db: AsyncSession, m: Milestone, files: list[dict[str, Any]], *, now: datetime | None) -> Milestone:
  gone = {f.get("id") for f in files}
  m.associated_files = [f for f in m.associated_files if f.get("id") not in gone]
  names = ", ".join(str(f.get("name")) for f in files)
  return await _save(
    db,
    m,
    action=f"{len(files)} file(s) removed: {names}.",
    event_type="milestone.files_removed",
    payload={"files": [f.get("id") for f in files]},
    now=now,
  )


def validate_manual_fields(*, name: str, description: str, category_id: str | None) -> dict[str, str]:
  errors: dict[str, str] = {}
  if len((name or "").strip()) < MIN_NAME_LENGTH:
    errors["name"] = f"Name must be at least {MIN_NAME_LENGTH} characters"
  if len((description or "").strip()) < MIN_DESCRIPTION_LENGTH:
    errors["description"] = f"Description must be at least {MIN_DESCRIPTION_LENGTH} characters"
  if not category_id:
    errors["category"] = "Category is required"
  return errors


async def create_manual_milestone(
  db: AsyncSession,
  *,
  project_id: str,
  name: str,
  description: str,
  category_id: str | None,
  occurred_on: date | datetime,
  files: list[IncomingFile] | None = None,
  trello_auth: TrelloAuth | None = None,
  drive_auth: DriveAuth | None = None,
  now: datetime | None = None,
) -> Milestone:
  path = milestone_path(project_id)
  ensure_writable(project_id, operation="create", path=path, request_data={"name": name})
  errors = validate_manual_fields(name=name, description=description, category_id=category_id)
  if errors:
    raise ValidationError("Invalid milestone", errors)
  project = await require_project(db, project_id)
  cat = category_doc(await require_category(db, category_id))

  records = await route_uploads(
    card_id=project_id, project_code=project.code, files=list(files or []), trello_auth=trello_auth, drive_auth=drive_auth
  )
  m = Milestone(
    project_id=project_id,
    id=await next_local_id(db, project_id),
    name=name.strip(),
    description=description.strip(),
    occurred_at=iso_utc(normalize_occurred_at(occurred_on, now=now)),
    category=cat,
    tags=["manual"],
    associated_files=records,
    is_important=False,
    history=[history_entry(f"Milestone created manually with {len(records)} file(s).", now=now)],
  )
  db.add(m)
  await write_audit(
    db,
    event_type="milestone.created",
    entity_type="Milestone",
    entity_id=m.id,
    project_id=project_id,
    payload={"name": m.name, "files": len(records)},
  )
  await commit_write(db, path=milestone_path(project_id, m.id), operation="create", request_data=milestone_doc(m))
  logger.info("Created manual milestone %s on %s", m.id, project_id)
  return m


async def delete_milestone(db: AsyncSession, *, project_id: str, milestone_id: str, confirm: str | None) -> None:
  if (confirm or "").strip().lower() != CONFIRM_WORD:
    raise ValidationError(f'Type "{CONFIRM_WORD}" to confirm', {"confirm": "mismatch"})
  m = await _load(db, project_id, milestone_id, "delete")
  await db.delete(m)
  await write_audit(
    db,
    event_type="milestone.deleted",
    entity_type="Milestone",
    entity_id=milestone_id,
    project_id=project_id,
    payload={"name": m.name},
  )
  await commit_write(db, path=milestone_path(project_id, milestone_id), operation="delete")
