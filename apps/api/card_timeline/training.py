from __future__ import annotations

from typing import Any

from card_timeline.config import settings
from card_timeline.milestones.categories import DEFAULT_CATEGORIES

TRAINING_PROJECT_NAME = "Training project RSA999"
TRAINING_PROJECT_CODE = "RSA999"


def _cat(category_id: str) -> dict[str, str]:
  for c in DEFAULT_CATEGORIES:
    if c["id"] == category_id:
      return dict(c)
  return dict(DEFAULT_CATEGORIES[0])


_TRAINING_MILESTONES: list[dict[str, Any]] = [
  {
    "id": "milestone-training-kickoff",
    "name": "Kickoff meeting",
    "description": "First meeting with the client to agree scope and calendar.",
    "occurredAt": "2024-01-15T07:00:00.000Z",
    "categoryId": "cat-2",
    "tags": ["meeting", "client"],
    "associatedFiles": [
      {"id": "training-file-1", "name": "kickoff-minutes.pdf", "size": "182.40 KB", "type": "document", "url": None}
    ],
    "isImportant": True,
  },
  {
    "id": "milestone-training-survey",
    "name": "Site survey delivered",
    "description": "Topographic survey of the plot handed over by the surveyor.",
    "occurredAt": "2024-02-02T07:00:00.000Z",
    "categoryId": "cat-4",
    "tags": ["deliverable"],
    "associatedFiles": [
      {"id": "training-file-2", "name": "survey.png", "size": "940.12 KB", "type": "image", "url": None}
    ],
    "isImportant": False,
  },
  {
    "id": "milestone-training-permit",
    "name": "Building permit requested",
    "description": "Permit application filed at the town hall.",
    "occurredAt": "2024-03-11T07:00:00.000Z",
    "categoryId": "cat-5",
    "tags": ["permit"],
    "associatedFiles": [],
    "isImportant": False,
  },
  {
    "id": "milestone-training-comment",
    "name": "Comment by Demo User",
    "description": "Waiting for the structural engineer's report before the next step.",
    "occurredAt": "2024-03-20T09:42:00.000Z",
    "categoryId": "cat-10",
    "tags": ["comment"],
    "associatedFiles": [],
    "isImportant": False,
  },
]


def is_training(project_id: str) -> bool:
  return project_id == settings.training_card_id


def training_project() -> dict[str, Any]:
  return {
    "id": settings.training_card_id,
    "name": TRAINING_PROJECT_NAME,
    "code": TRAINING_PROJECT_CODE,
    "url": None,
    "readOnly": True,
  }


def training_milestones() -> list[dict[str, Any]]:
  """Fresh copies of the demo timeline; callers may mutate them freely."""
  out: list[dict[str, Any]] = []
  for raw in _TRAINING_MILESTONES:
    doc = {k: v for k, v in raw.items() if k != "categoryId"}
    doc["category"] = _cat(raw["categoryId"])
    doc["tags"] = list(raw["tags"])
    doc["associatedFiles"] = [dict(f) for f in raw["associatedFiles"]]
    doc["history"] = ["15 Jan 2024, 07:00:00 - Demo data."]
    out.append(doc)
  return out
