"""
Error taxonomy shared by the external clients, the document store and the API boundary.
"""

from __future__ import annotations

from typing import Any


class TimelineError(Exception):
  """Base exception for card-timeline."""

  def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
    super().__init__(message)
    self.message = message
    self.details = details or {}


class SourceFetchError(TimelineError):
  """The external card source was unreachable or rejected the request."""


class TrelloApiError(SourceFetchError):
  def __init__(self, *, status_code: int, message: str, details: dict[str, Any] | None = None) -> None:
    super().__init__(message, details)
    self.status_code = status_code


class ObjectStoreError(TimelineError):
  """Upload or delete against the external object store failed."""

  def __init__(self, message: str, *, status_code: int | None = None, details: dict[str, Any] | None = None) -> None:
    super().__init__(message, details)
    self.status_code = status_code


class StoreWriteError(TimelineError):
  def __init__(self, *, path: str, operation: str, request_data: Any = None, reason: str | None = None) -> None:
    message = f"Document store denied: cannot {operation} on {path}"
    if reason:
      message = f"{message} ({reason})"
    super().__init__(message, {"path": path, "operation": operation})
    self.path = path
    self.operation = operation
    self.request_data = request_data
    self.reason = reason


class ValidationError(TimelineError):
  pass


class NotFoundError(TimelineError):
  pass


class CategoryInUseError(TimelineError):
  def __init__(self, *, category_id: str, milestone_count: int) -> None:
    super().__init__(
      f"Category {category_id} is used by {milestone_count} milestone(s)",
      {"categoryId": category_id, "milestoneCount": milestone_count},
    )
    self.category_id = category_id
    self.milestone_count = milestone_count
