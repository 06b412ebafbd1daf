from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from card_timeline.config import settings
from card_timeline.errors import (
  CategoryInUseError,
  NotFoundError,
  ObjectStoreError,
  SourceFetchError,
  StoreWriteError,
  TimelineError,
  ValidationError,
)
from card_timeline.milestones.reconciler import SessionRegistry
from card_timeline.routers.audit import router as audit_router
from card_timeline.routers.cards import router as cards_router
from card_timeline.routers.categories import router as categories_router
from card_timeline.routers.milestones import router as milestones_router
from card_timeline.routers.projects import router as projects_router
from card_timeline.seed import seed

logger = logging.getLogger(__name__)

app = FastAPI(
  title="Card Timeline API",
  version="0.1.0",
  docs_url="/docs" if settings.api_docs_enabled else None,
  redoc_url="/redoc" if settings.api_docs_enabled else None,
  openapi_url="/openapi.json" if settings.api_docs_enabled else None,
)
app.state.sessions = SessionRegistry()


def _notification(status_code: int, title: str, exc: TimelineError, **extra: object) -> JSONResponse:
  detail: dict = {"message": exc.message, **exc.details, **extra}
  return JSONResponse(
    status_code=status_code,
    content={
      "detail": detail,
      "notification": {"variant": "destructive", "title": title, "description": exc.message},
    },
  )


@app.exception_handler(StoreWriteError)
async def _store_write_error_handler(_, exc: StoreWriteError) -> JSONResponse:
  logger.warning("Store write refused: %s", exc.message)
  return _notification(403, "Permission error", exc)


@app.exception_handler(SourceFetchError)
async def _source_fetch_error_handler(_, exc: SourceFetchError) -> JSONResponse:
  status_code = getattr(exc, "status_code", None)
  return _notification(502, "Could not load card data", exc, statusCode=status_code)


@app.exception_handler(ObjectStoreError)
async def _object_store_error_handler(_, exc: ObjectStoreError) -> JSONResponse:
  return _notification(502, "File storage error", exc, statusCode=exc.status_code)


@app.exception_handler(NotFoundError)
async def _not_found_handler(_, exc: NotFoundError) -> JSONResponse:
  return _notification(404, "Not found", exc)


@app.exception_handler(CategoryInUseError)
async def _category_in_use_handler(_, exc: CategoryInUseError) -> JSONResponse:
  return _notification(409, "Category in use", exc)


@app.exception_handler(ValidationError)
async def _validation_error_handler(_, exc: ValidationError) -> JSONResponse:
  return _notification(422, "Invalid input", exc)


app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origin_list(),
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)

app.include_router(cards_router)
app.include_router(projects_router)
app.include_router(milestones_router)
app.include_router(categories_router)
app.include_router(audit_router)


@app.get("/health")
async def health() -> dict:
  return {"ok": True}


@app.get("/version")
async def version() -> dict:
  return {"version": settings.app_version, "buildSha": settings.build_sha}


@app.on_event("startup")
async def _startup() -> None:
  logging.basicConfig(level=settings.log_level.upper())
  await seed()
