from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

import httpx

from card_timeline.config import settings
from card_timeline.errors import ObjectStoreError

logger = logging.getLogger(__name__)

FOLDER_MIME = "application/vnd.google-apps.folder"


def _error_detail(r: httpx.Response) -> str:
  try:
    payload = r.json()
  except Exception:
    return (r.text or "")[:500] or f"HTTP {r.status_code}"
  if isinstance(payload, dict):
    err = payload.get("error")
    if isinstance(err, dict):
      return str(err.get("message") or err.get("status") or f"HTTP {r.status_code}")
    desc = payload.get("error_description")
    if desc:
      return f"{err}: {desc}" if err else str(desc)
    if err:
      return str(err)
  return f"HTTP {r.status_code}"


def _friendly(detail: str) -> str:
  if "unauthorized_client" in detail:
    return "OAuth client is not authorized; check that the client id matches the one that issued the refresh token"
  if "invalid_grant" in detail:
    return "refresh token is invalid or revoked; issue a new one"
  return detail


@dataclass
class DriveAuth:
  client_id: str
  client_secret: str
  refresh_token: str
  root_folder_id: str
  token_url: str = "https://oauth2.googleapis.com/token"
  base_url: str = "https://www.googleapis.com"
  transport: httpx.AsyncBaseTransport | None = None

  def httpx_client(self, access_token: str | None = None) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if access_token:
      headers["Authorization"] = f"Bearer {access_token}"
    return httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=120, transport=self.transport)


def drive_auth_from_settings() -> DriveAuth:
  missing = [
    name
    for name, value in (
      ("GOOGLE_CLIENT_ID", settings.google_client_id),
      ("GOOGLE_CLIENT_SECRET", settings.google_client_secret),
      ("GOOGLE_REFRESH_TOKEN", settings.google_refresh_token),
      ("DRIVE_ROOT_FOLDER_ID", settings.drive_root_folder_id),
    )
    if not (value or "").strip()
  ]
  if missing:
    raise ObjectStoreError(f"Missing object store configuration: {', '.join(missing)}")
  return DriveAuth(
    client_id=settings.google_client_id.strip(),
    client_secret=settings.google_client_secret.strip(),
    refresh_token=settings.google_refresh_token.strip(),
    root_folder_id=settings.drive_root_folder_id.strip(),
    token_url=settings.google_token_url,
    base_url=settings.drive_base_url,
  )


async def drive_access_token(*, auth: DriveAuth) -> str:
  async with httpx.AsyncClient(timeout=30, transport=auth.transport) as client:
    try:
      r = await client.post(
        auth.token_url,
        data={
          "client_id": auth.client_id,
          "client_secret": auth.client_secret,
          "refresh_token": auth.refresh_token,
          "grant_type": "refresh_token",
        },
      )
    except httpx.HTTPError as e:
      raise ObjectStoreError(f"Google authentication failed: {e.__class__.__name__}") from e
  if r.status_code >= 400:
    detail = _error_detail(r)
    logger.warning("Google token exchange failed (%s): %s", r.status_code, detail)
    raise ObjectStoreError(f"Google authentication failed: {_friendly(detail)}", status_code=r.status_code)
  try:
    payload = r.json() or {}
  except ValueError as e:
    raise ObjectStoreError("Google authentication failed: unreadable token response", status_code=r.status_code) from e
  token = payload.get("access_token") if isinstance(payload, dict) else None
  if not token:
    raise ObjectStoreError("Google authentication failed: no access token returned")
  return str(token)


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except httpx.HTTPError as e:
    raise ObjectStoreError(f"Drive unreachable: {e.__class__.__name__}") from e
  if r.status_code >= 400:
    detail = _error_detail(r)
    logger.warning("Drive %s %s -> %s: %s", method, path, r.status_code, detail)
    raise ObjectStoreError(f"Drive request failed: {_friendly(detail)}", status_code=r.status_code)
  if r.status_code == 204 or not r.content:
    return None
  try:
    return r.json()
  except ValueError as e:
    raise ObjectStoreError("Drive returned an unreadable response", status_code=r.status_code) from e


def _escape_query_value(value: str) -> str:
  return value.replace("\\", "\\\\").replace("'", "\\'")


async def drive_get_or_create_folder(client: httpx.AsyncClient, *, root_folder_id: str, folder_name: str) -> str:
  q = (
    f"name = '{_escape_query_value(folder_name)}' and mimeType = '{FOLDER_MIME}' "
    f"and '{root_folder_id}' in parents and trashed = false"
  )
  found = await _request_json(client, "GET", "/drive/v3/files", params={"q": q, "fields": "files(id, name)", "spaces": "drive"})
  files = (found or {}).get("files") or []
  if files:
    return str(files[0]["id"])
  created = await _request_json(
    client,
    "POST",
    "/drive/v3/files",
    params={"fields": "id"},
    json={"name": folder_name, "mimeType": FOLDER_MIME, "parents": [root_folder_id]},
  )
  return str(created["id"])


def _multipart_related(metadata: dict, content: bytes, mime_type: str) -> tuple[bytes, str]:
  # Drive's multipart upload wants multipart/related, not form-data.
  boundary = f"timeline-{uuid.uuid4().hex}"
  head = (
    f"--{boundary}\r\n"
    "Content-Type: application/json; charset=UTF-8\r\n\r\n"
    f"{json.dumps(metadata)}\r\n"
    f"--{boundary}\r\n"
    f"Content-Type: {mime_type}\r\n\r\n"
  ).encode("utf-8")
  tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
  return head + content + tail, f"multipart/related; boundary={boundary}"


async def drive_upload_file(
  *,
  auth: DriveAuth,
  file_name: str,
  mime_type: str | None,
  content: bytes,
  folder_hint: str | None,
) -> dict:
  """
  Upload into `<root>/<folder_hint>` (created on demand) and share the file read-only by link.
  Returns {"id", "link"}.
  """
  access_token = await drive_access_token(auth=auth)
  folder_name = (folder_hint or "").strip() or settings.drive_fallback_folder
  async with auth.httpx_client(access_token) as client:
    folder_id = await drive_get_or_create_folder(client, root_folder_id=auth.root_folder_id, folder_name=folder_name)
    metadata = {"name": file_name, "parents": [folder_id]}
    body, content_type = _multipart_related(metadata, content, mime_type or "application/octet-stream")
    created = await _request_json(
      client,
      "POST",
      "/upload/drive/v3/files",
      params={"uploadType": "multipart", "fields": "id,webViewLink"},
      content=body,
      headers={"Content-Type": content_type},
    )
    file_id = (created or {}).get("id")
    link = (created or {}).get("webViewLink")
    if not file_id or not link:
      raise ObjectStoreError("Drive upload returned no id or link")
    await _request_json(
      client,
      "POST",
      f"/drive/v3/files/{file_id}/permissions",
      json={"role": "reader", "type": "anyone"},
    )
  return {"id": str(file_id), "link": str(link)}


async def drive_delete_file(*, auth: DriveAuth, file_id: str) -> None:
  access_token = await drive_access_token(auth=auth)
  async with auth.httpx_client(access_token) as client:
    await _request_json(client, "DELETE", f"/drive/v3/files/{file_id}")
