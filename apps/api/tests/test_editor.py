from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from card_timeline.config import settings
from card_timeline.db import SessionLocal
from card_timeline.errors import NotFoundError, ObjectStoreError, StoreWriteError, TrelloApiError, ValidationError
from card_timeline.milestones import editor
from card_timeline.milestones.files import IncomingFile

from conftest import CARD_ID, load_milestone, seed_milestone, seed_project

NOW = datetime(2024, 6, 10, 15, 30, 12, tzinfo=timezone.utc)
MID = "milestone-local-1717000000000"


async def _prepare(**fields) -> None:  # type: ignore[no-untyped-def]
  await seed_project()
  await seed_milestone(CARD_ID, MID, **fields)


@pytest.mark.anyio
async def test_each_change_appends_exactly_one_history_entry() -> None:
  await _prepare()
  ids = {"project_id": CARD_ID, "milestone_id": MID}
  async with SessionLocal() as db:
    m = await editor.rename(db, name="Site visit #2", now=NOW, **ids)
    assert m.history == ['10 Jun 2024, 15:30:12 - Name changed from "Site visit" to "Site visit #2".']
    await editor.describe(db, description="Second visit with the surveyor.", **ids)
    await editor.recategorize(db, category_id="cat-3", **ids)
    await editor.redate(db, value=date(2024, 6, 1), **ids)
    await editor.add_tag(db, tag="survey", **ids)
    await editor.remove_tag(db, tag="survey", **ids)
    await editor.toggle_important(db, **ids)

  m = await load_milestone(CARD_ID, MID)
  assert len(m.history) == 7
  assert m.category == {"id": "cat-3", "name": "Documents", "color": "#FF9800"}
  assert m.occurred_at == "2024-06-01T07:00:00.000Z"
  assert m.tags == []
  assert m.is_important is True


@pytest.mark.anyio
async def test_no_op_changes_leave_history_untouched() -> None:
  await _prepare(tags=["survey"], occurred_at="2024-06-01T07:00:00.000Z")
  ids = {"project_id": CARD_ID, "milestone_id": MID}
  async with SessionLocal() as db:
    await editor.rename(db, name="  Site visit  ", **ids)
    await editor.describe(db, description="Visit with the surveyor.", **ids)
    await editor.recategorize(db, category_id="cat-2", **ids)
    await editor.redate(db, value=datetime(2024, 6, 1, 18, 45), now=NOW, **ids)
    await editor.add_tag(db, tag="survey", **ids)
    await editor.remove_tag(db, tag="missing", **ids)

  m = await load_milestone(CARD_ID, MID)
  assert m.history == []
  assert m.tags == ["survey"]


@pytest.mark.anyio
async def test_blank_tag_and_unknown_category_are_rejected() -> None:
  await _prepare()
  async with SessionLocal() as db:
    with pytest.raises(ValidationError):
      await editor.add_tag(db, project_id=CARD_ID, milestone_id=MID, tag="   ")
    with pytest.raises(NotFoundError):
      await editor.recategorize(db, project_id=CARD_ID, milestone_id=MID, category_id="cat-missing")


@pytest.mark.anyio
async def test_manual_creation_validates_and_normalizes_time() -> None:
  await seed_project()
  async with SessionLocal() as db:
    with pytest.raises(ValidationError) as exc:
      await editor.create_manual_milestone(
        db, project_id=CARD_ID, name="abc", description="short", category_id=None, occurred_on=date(2024, 6, 10)
      )
    assert set(exc.value.details) == {"name", "description", "category"}

    today = await editor.create_manual_milestone(
      db,
      project_id=CARD_ID,
      name="Client call",
      description="Agreed the final layout.",
      category_id="cat-2",
      occurred_on=date(2024, 6, 10),
      now=NOW,
    )
    other = await editor.create_manual_milestone(
      db,
      project_id=CARD_ID,
      name="Earlier call",
      description="Agreed the first layout.",
      category_id="cat-2",
      occurred_on=date(2024, 5, 2),
      now=NOW,
    )

  assert today.id.startswith("milestone-local-")
  assert today.id != other.id
  assert today.occurred_at == "2024-06-10T15:30:12.000Z"
  assert other.occurred_at == "2024-05-02T07:00:00.000Z"
  assert today.tags == ["manual"]
  assert today.category["name"] == "Meetings"
  assert today.history == ["10 Jun 2024, 15:30:12 - Milestone created manually with 0 file(s)."]


@pytest.mark.anyio
async def test_add_files_routes_by_size_and_reuses_card_attachments(monkeypatch) -> None:  # type: ignore[no-untyped-def]
  await _prepare(associated_files=[{"id": "f0", "name": "linked.pdf", "size": "1.00 KB", "type": "document", "url": None}])
  monkeypatch.setattr(settings, "large_file_threshold_bytes", 100)
  uploads: list[str] = []
  drive_calls: list[dict] = []
  links: list[tuple[str, str]] = []

  async def _attachments(*, auth, card_id):  # type: ignore[no-untyped-def]
    return [{"id": "att-old", "fileName": "existing.pdf", "mimeType": "application/pdf", "bytes": 4096, "date": None, "url": "https://t/att-old"}]

  async def _upload(*, auth, card_id, file_name, content, mime_type=None):  # type: ignore[no-untyped-def]
    uploads.append(file_name)
    return {"id": "att-new", "url": "https://t/att-new"}

  async def _drive_upload(*, auth, file_name, mime_type, content, folder_hint):  # type: ignore[no-untyped-def]
    drive_calls.append({"name": file_name, "folder": folder_hint, "size": len(content)})
    return {"id": "drv-1", "link": "https://drive.example/drv-1"}

  async def _attach_url(*, auth, card_id, name, url):  # type: ignore[no-untyped-def]
    links.append((name, url))
    return {"id": "att-link"}

  monkeypatch.setattr(editor, "trello_get_card_attachments", _attachments)
  monkeypatch.setattr(editor, "trello_upload_attachment", _upload)
  monkeypatch.setattr(editor, "drive_upload_file", _drive_upload)
  monkeypatch.setattr(editor, "trello_attach_url", _attach_url)

  files = [
    IncomingFile("linked.pdf", b"x" * 10, "application/pdf"),
    IncomingFile("notes.txt", b"x" * 10, "text/plain"),
    IncomingFile("walkthrough.mp4", b"x" * 500, "video/mp4"),
    IncomingFile("existing.pdf", b"x" * 10, "application/pdf"),
  ]
  async with SessionLocal() as db:
    m = await editor.add_files(db, project_id=CARD_ID, milestone_id=MID, files=files)

  assert uploads == ["notes.txt"]
  assert drive_calls == [{"name": "walkthrough.mp4", "folder": "ABC123", "size": 500}]
  assert links == [("walkthrough.mp4", "https://drive.example/drv-1")]
  by_name = {f["name"]: f for f in m.associated_files}
  assert list(by_name) == ["linked.pdf", "notes.txt", "walkthrough.mp4", "existing.pdf"]
  assert by_name["notes.txt"]["sourceCardAttachmentId"] == "att-new"
  assert by_name["walkthrough.mp4"]["sourceObjectStoreId"] == "drv-1"
  assert by_name["walkthrough.mp4"]["sourceCardAttachmentId"] == "att-link"
  assert by_name["walkthrough.mp4"]["type"] == "video"
  assert by_name["existing.pdf"]["id"] == "att-old"
  assert len(m.history) == 1
  assert "3 file(s) added" in m.history[0]


@pytest.mark.anyio
async def test_adding_only_linked_files_is_a_no_op(monkeypatch) -> None:  # type: ignore[no-untyped-def]
  await _prepare(associated_files=[{"id": "f0", "name": "linked.pdf", "size": "1.00 KB", "type": "document", "url": None}])

  async def _boom(**_):  # type: ignore[no-untyped-def]
    raise AssertionError("no remote call expected")

  monkeypatch.setattr(editor, "trello_get_card_attachments", _boom)
  async with SessionLocal() as db:
    m = await editor.add_files(db, project_id=CARD_ID, milestone_id=MID, files=[IncomingFile("linked.pdf", b"x")])
  assert m.history == []


@pytest.mark.anyio
async def test_remove_files_tolerates_already_deleted_remote_objects(monkeypatch) -> None:  # type: ignore[no-untyped-def]
  files = [
    {"id": "drv-1", "name": "clip.mp4", "size": "1.00 KB", "type": "video", "url": "u", "sourceCardAttachmentId": "att-link", "sourceObjectStoreId": "drv-1"},
    {"id": "f2", "name": "keep.pdf", "size": "1.00 KB", "type": "document", "url": None},
  ]
  await _prepare(associated_files=files)

  async def _drive_delete(*, auth, file_id):  # type: ignore[no-untyped-def]
    raise ObjectStoreError("Drive request failed: File not found", status_code=404)

  async def _trello_delete(*, auth, card_id, attachment_id):  # type: ignore[no-untyped-def]
    raise TrelloApiError(status_code=404, message="not found")

  monkeypatch.setattr(editor, "drive_delete_file", _drive_delete)
  monkeypatch.setattr(editor, "trello_delete_attachment", _trello_delete)
  async with SessionLocal() as db:
    m = await editor.remove_files(db, project_id=CARD_ID, milestone_id=MID, file_ids=["drv-1"])

  assert [f["id"] for f in m.associated_files] == ["f2"]
  assert m.history[-1].endswith("1 file(s) removed: clip.mp4.")


@pytest.mark.anyio
async def test_remove_files_keeps_milestone_when_remote_delete_fails(monkeypatch) -> None:  # type: ignore[no-untyped-def]
  files = [{"id": "att-9", "name": "a.pdf", "size": "1.00 KB", "type": "document", "url": None, "sourceCardAttachmentId": "att-9"}]
  await _prepare(associated_files=files)

  async def _trello_delete(*, auth, card_id, attachment_id):  # type: ignore[no-untyped-def]
    raise TrelloApiError(status_code=500, message="server error")

  monkeypatch.setattr(editor, "trello_delete_attachment", _trello_delete)
  async with SessionLocal() as db:
    with pytest.raises(TrelloApiError):
      await editor.remove_files(db, project_id=CARD_ID, milestone_id=MID, file_ids=["att-9"])

  m = await load_milestone(CARD_ID, MID)
  assert [f["id"] for f in m.associated_files] == ["att-9"]
  assert m.history == []


@pytest.mark.anyio
async def test_remove_files_drops_files_deleted_before_a_later_failure(monkeypatch) -> None:  # type: ignore[no-untyped-def]
  files = [
    {"id": "att-1", "name": "first.pdf", "size": "1.00 KB", "type": "document", "url": None, "sourceCardAttachmentId": "att-1"},
    {"id": "att-2", "name": "second.pdf", "size": "1.00 KB", "type": "document", "url": None, "sourceCardAttachmentId": "att-2"},
    {"id": "f3", "name": "keep.pdf", "size": "1.00 KB", "type": "document", "url": None},
  ]
  await _prepare(associated_files=files)
  deleted: list[str] = []

  async def _trello_delete(*, auth, card_id, attachment_id):  # type: ignore[no-untyped-def]
    if attachment_id == "att-2":
      raise TrelloApiError(status_code=500, message="server error")
    deleted.append(attachment_id)

  monkeypatch.setattr(editor, "trello_delete_attachment", _trello_delete)
  async with SessionLocal() as db:
    with pytest.raises(TrelloApiError):
      await editor.remove_files(db, project_id=CARD_ID, milestone_id=MID, file_ids=["att-1", "att-2"], now=NOW)

  assert deleted == ["att-1"]
  m = await load_milestone(CARD_ID, MID)
  assert [f["id"] for f in m.associated_files] == ["att-2", "f3"]
  assert len(m.history) == 1
  assert m.history[0].endswith("1 file(s) removed: first.pdf.")


@pytest.mark.anyio
async def test_shared_card_attachment_is_not_deleted_remotely(monkeypatch) -> None:  # type: ignore[no-untyped-def]
  shared = {"id": "att-1", "name": "a.pdf", "size": "1.00 KB", "type": "document", "url": None, "sourceCardAttachmentId": "att-1"}
  await _prepare(associated_files=[shared])
  await seed_milestone(CARD_ID, "milestone-att-1", associated_files=[shared])

  async def _trello_delete(**_):  # type: ignore[no-untyped-def]
    raise AssertionError("attachment is still used by another milestone")

  monkeypatch.setattr(editor, "trello_delete_attachment", _trello_delete)
  async with SessionLocal() as db:
    m = await editor.remove_files(db, project_id=CARD_ID, milestone_id=MID, file_ids=["att-1"])
  assert m.associated_files == []


@pytest.mark.anyio
async def test_delete_requires_confirmation_word() -> None:
  await _prepare()
  async with SessionLocal() as db:
    with pytest.raises(ValidationError):
      await editor.delete_milestone(db, project_id=CARD_ID, milestone_id=MID, confirm="yes")
  assert await load_milestone(CARD_ID, MID) is not None

  async with SessionLocal() as db:
    await editor.delete_milestone(db, project_id=CARD_ID, milestone_id=MID, confirm="DELETE")
  assert await load_milestone(CARD_ID, MID) is None


@pytest.mark.anyio
async def test_training_project_refuses_writes() -> None:
  async with SessionLocal() as db:
    with pytest.raises(StoreWriteError) as exc:
      await editor.rename(db, project_id="training-rsa999", milestone_id="milestone-training-kickoff", name="Renamed")
  assert exc.value.operation == "update"
  assert exc.value.path == "projects/training-rsa999/milestones/milestone-training-kickoff"
