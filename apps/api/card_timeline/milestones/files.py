from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from typing import Any, Literal

FileType = Literal["image", "video", "audio", "document", "other"]

DOCUMENT_MIME_MARKERS = ("application/pdf", "application/msword", "text/plain")


def classify_file(mime_type: str | None, file_name: str | None = None) -> FileType:
  mime = (mime_type or "").strip().lower()
  if not mime and file_name:
    guessed, _ = mimetypes.guess_type(file_name)
    mime = (guessed or "").lower()
  if mime.startswith("image/"):
    return "image"
  if mime.startswith("video/"):
    return "video"
  if mime.startswith("audio/"):
    return "audio"
  if any(marker in mime for marker in DOCUMENT_MIME_MARKERS):
    return "document"
  return "other"


def human_size(num_bytes: int) -> str:
  return f"{(num_bytes or 0) / 1024:.2f} KB"


@dataclass
class IncomingFile:
  name: str
  content: bytes
  mime_type: str | None = None

  @property
  def size(self) -> int:
    return len(self.content)


def associated_file(
  *,
  file_id: str,
  name: str,
  size_bytes: int,
  mime_type: str | None,
  url: str | None,
  card_attachment_id: str | None = None,
  object_store_id: str | None = None,
) -> dict[str, Any]:
  out: dict[str, Any] = {
    "id": file_id,
    "name": name,
    "size": human_size(size_bytes),
    "type": classify_file(mime_type, name),
    "url": url,
  }
  if card_attachment_id:
    out["sourceCardAttachmentId"] = card_attachment_id
  if object_store_id:
    out["sourceObjectStoreId"] = object_store_id
  return out
