from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from card_timeline.config import settings
from card_timeline.errors import SourceFetchError, TrelloApiError

logger = logging.getLogger(__name__)

ACTION_FILTER = "commentCard,updateCard:idList"


def normalize_base_url(base_url: str) -> str:
  b = (base_url or "").strip().rstrip("/")
  if not b:
    raise ValueError("baseUrl is required")
  if not (b.startswith("http://") or b.startswith("https://")):
    b = "https://" + b
  return b


def _extract_trello_error(payload: Any) -> tuple[str, dict[str, Any]]:
  if isinstance(payload, dict):
    msg = payload.get("message") or payload.get("error") or "Trello request failed"
    return str(msg), {k: v for k, v in payload.items() if k in ("error", "message")}
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500], {}
  return "Trello request failed", {}


async def _request_json(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> Any:
  try:
    r = await client.request(method, path, **kwargs)
  except httpx.HTTPError as e:
    logger.warning("Trello %s %s failed: %s", method, path, e)
    raise SourceFetchError(f"Trello unreachable: {e.__class__.__name__}", {"path": path}) from e
  if r.status_code >= 400:
    try:
      payload = r.json()
    except Exception:
      payload = (r.text or "")[:800]
    msg, details = _extract_trello_error(payload)
    logger.warning("Trello %s %s -> %s: %s", method, path, r.status_code, msg)
    raise TrelloApiError(status_code=r.status_code, message=msg, details=details)
  if r.status_code == 204 or not r.content:
    return None
  try:
    return r.json()
  except ValueError as e:
    logger.warning("Trello %s %s returned a non-JSON body", method, path)
    raise SourceFetchError("Trello returned an unreadable response", {"path": path}) from e


@dataclass
class TrelloAuth:
  base_url: str
  api_key: str
  token: str
  user_agent: str
  transport: httpx.AsyncBaseTransport | None = None

  def httpx_client(self) -> httpx.AsyncClient:
    headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
    params = {"key": self.api_key, "token": self.token}
    return httpx.AsyncClient(base_url=self.base_url, headers=headers, params=params, timeout=60, transport=self.transport)


def trello_auth_from_settings() -> TrelloAuth:
  if not settings.trello_api_key or not settings.trello_token:
    raise SourceFetchError("Trello credentials are not configured (TRELLO_API_KEY / TRELLO_TOKEN)")
  return TrelloAuth(
    base_url=normalize_base_url(settings.trello_base_url),
    api_key=settings.trello_api_key,
    token=settings.trello_token,
    user_agent=settings.trello_user_agent,
  )


async def trello_get_card(*, auth: TrelloAuth, card_id: str) -> dict:
  async with auth.httpx_client() as client:
    return await _request_json(client, "GET", f"/cards/{card_id}", params={"fields": "name,desc,url,shortUrl"})


async def trello_get_card_attachments(*, auth: TrelloAuth, card_id: str) -> list[dict]:
  async with auth.httpx_client() as client:
    data = await _request_json(
      client,
      "GET",
      f"/cards/{card_id}/attachments",
      params={"fields": "id,name,fileName,mimeType,bytes,date,url,isUpload"},
    )
  if not isinstance(data, list):
    return []
  out: list[dict] = []
  for a in data:
    if not isinstance(a, dict) or not a.get("id"):
      continue
    out.append(
      {
        "id": str(a["id"]),
        "fileName": a.get("fileName") or a.get("name") or str(a["id"]),
        "mimeType": a.get("mimeType") or "",
        "bytes": int(a.get("bytes") or 0),
        "date": a.get("date"),
        "url": a.get("url"),
      }
    )
  return out


async def trello_get_card_actions(*, auth: TrelloAuth, card_id: str, limit: int = 1000) -> list[dict]:
  async with auth.httpx_client() as client:
    data = await _request_json(
      client,
      "GET",
      f"/cards/{card_id}/actions",
      params={"filter": ACTION_FILTER, "limit": limit},
    )
  return [a for a in (data or []) if isinstance(a, dict) and a.get("id")]


async def trello_upload_attachment(*, auth: TrelloAuth, card_id: str, file_name: str, content: bytes, mime_type: str | None = None) -> dict:
  files = {"file": (file_name, content, mime_type or "application/octet-stream")}
  async with auth.httpx_client() as client:
    return await _request_json(client, "POST", f"/cards/{card_id}/attachments", data={"name": file_name}, files=files)


async def trello_attach_url(*, auth: TrelloAuth, card_id: str, name: str, url: str) -> dict:
  async with auth.httpx_client() as client:
    return await _request_json(client, "POST", f"/cards/{card_id}/attachments", params={"name": name, "url": url})


async def trello_delete_attachment(*, auth: TrelloAuth, card_id: str, attachment_id: str) -> None:
  async with auth.httpx_client() as client:
    await _request_json(client, "DELETE", f"/cards/{card_id}/attachments/{attachment_id}")
