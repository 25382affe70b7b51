"""FastAPI app with upload, profile lookup and health endpoints.

Spreadsheet uploads run through the full ingestion pipeline; domain errors are
mapped to JSON error responses by the exception handlers below.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.datastructures import UploadFile as StarletteUploadFile

from . import models
from .config import settings
from .db import dispose_engine, get_engine, get_session, ping
from .logging_config import setup_logging
from .parsers import FormatError, NoFileError
from .pipelines.processing import ingest_spreadsheet
from .pipelines.reconciliation import StorageConnectionError, StorageWriteError

logger = logging.getLogger(__name__)

NO_MATCH_MESSAGE = "no match found"


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class SkippedRowDTO(BaseModel):
    """Row rejected during normalization."""
    row_number: int
    reason: str


class UploadSummaryDTO(BaseModel):
    """Per-username outcome of an upload."""
    filename: str
    total_rows: int
    inserted_count: int
    inserted: list[str] = Field(default_factory=list)
    duplicates: list[str] = Field(default_factory=list)
    collided: list[str] = Field(default_factory=list)
    skipped_rows: list[SkippedRowDTO] = Field(default_factory=list)


class UploadResponse(BaseModel):
    """Spreadsheet upload response."""
    message: str
    data: UploadSummaryDTO | None = None


class ProfileDTO(BaseModel):
    """Stored profile."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    username: str
    full_name: str | None = None
    profile_url: str | None = None
    avatar_url: str | None = None
    followed_by_viewer: bool | None = None
    is_verified: bool | None = None
    followers_count: int | None = None
    following_count: int | None = None
    biography: str | None = None
    public_email: str | None = None
    posts_count: int | None = None
    phone_country_code: str | None = None
    phone_number: str | None = None
    city: str | None = None
    address: str | None = None
    is_private: bool | None = None
    is_business: bool | None = None
    external_url: str | None = None
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    message: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.app_name} v{settings.version}")

    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)
        logger.info("Database tables verified")
    except Exception as e:
        # Requests will surface the failure as StorageConnectionError
        logger.error(f"Database initialization failed: {e}")

    yield

    # Shutdown
    await dispose_engine()
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Spreadsheet upload of social profiles with duplicate skipping",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(NoFileError)
async def no_file_error_handler(request: Request, exc: NoFileError):
    """Handle uploads without a file."""
    logger.warning(f"Upload rejected: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="no_file", detail=str(exc)).model_dump(),
    )


@app.exception_handler(FormatError)
async def format_error_handler(request: Request, exc: FormatError):
    """Handle files that are not readable spreadsheets."""
    logger.warning(f"Upload rejected: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(error="format_error", detail=str(exc)).model_dump(),
    )


@app.exception_handler(StorageConnectionError)
async def storage_connection_error_handler(request: Request, exc: StorageConnectionError):
    """Handle database connectivity failures."""
    logger.error(f"Storage connection error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="storage_connection_error",
            detail="Error connecting to the database",
        ).model_dump(),
    )


@app.exception_handler(StorageWriteError)
async def storage_write_error_handler(request: Request, exc: StorageWriteError):
    """Handle failed batch inserts."""
    logger.error(f"Storage write error: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="storage_write_error",
            detail=(
                "Error saving data to database. Writes are not transactional across "
                "uploads: profiles stored before this failure are not rolled back, "
                "and re-uploading the file is safe."
            ),
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="internal_error",
            detail=str(exc) if settings.debug else None,
        ).model_dump(),
    )


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    response = await call_next(request)
    logger.info(f"{request.method} {request.url.path} - {response.status_code}")
    return response


@app.get("/health", response_model=HealthResponse)
async def health(session: AsyncSession = Depends(get_session)) -> HealthResponse:
    """Health check endpoint, including database connectivity."""
    connected = await ping(session)
    return HealthResponse(
        status="ok" if connected else "degraded",
        version=settings.version,
        database="connected" if connected else "disconnected",
    )


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "upload": f"{settings.api_prefix}/upload",
            "list_profiles": f"{settings.api_prefix}/data",
            "search_profiles": f"{settings.api_prefix}/data/{{username}}",
            "docs": "/docs",
        },
    }


@app.post(
    f"{settings.api_prefix}/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_200_OK,
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                "multipart/form-data": {
                    "schema": {
                        "type": "object",
                        "properties": {
                            settings.upload.field_name: {
                                "type": "string",
                                "format": "binary",
                                "description": "Excel workbook (.xlsx); only the first sheet is read",
                            },
                        },
                    },
                },
            },
        },
    },
)
async def upload_profiles(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> UploadResponse:
    """Upload a spreadsheet of profiles and store the new ones.

    The multipart form is read directly so that a missing file, or a plain
    text value in the file field, is reported as ``NoFileError`` (400).

    This endpoint:
    1. Validates the file extension and parses the first sheet
    2. Normalizes rows, skipping rows without Instagram ID or Username
    3. Skips usernames that are already stored
    4. Inserts the remaining profiles in one batch

    Args:
        request: Incoming multipart request
        session: Database session (injected)

    Returns:
        UploadResponse with inserted, duplicate, collided and skipped rows
    """
    form = await request.form()
    try:
        file = form.get(settings.upload.field_name)
        if not isinstance(file, StarletteUploadFile) or not file.filename:
            raise NoFileError("No file uploaded")

        logger.info(f"Received spreadsheet upload: {file.filename}")

        content = await file.read()

        report = await ingest_spreadsheet(session, content, file.filename)

        return UploadResponse(
            message=report.message,
            data=UploadSummaryDTO(
                filename=report.filename,
                total_rows=report.total_rows,
                inserted_count=len(report.inserted),
                inserted=report.inserted,
                duplicates=report.duplicates,
                collided=report.collided,
                skipped_rows=[
                    SkippedRowDTO(row_number=s.row_number, reason=s.reason)
                    for s in report.skipped_rows
                ],
            ),
        )

    except (NoFileError, FormatError, StorageConnectionError, StorageWriteError):
        # Re-raise to be caught by exception handlers
        raise
    except Exception as e:
        logger.error(f"Unexpected error processing upload: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal server error: {str(e)}",
        )
    finally:
        await form.close()


@app.get(f"{settings.api_prefix}/data", response_model=list[ProfileDTO])
async def list_profiles(session: AsyncSession = Depends(get_session)) -> list[ProfileDTO]:
    """Return every stored profile."""
    result = await session.execute(select(models.Profile).order_by(models.Profile.id))
    return [ProfileDTO.model_validate(p) for p in result.scalars().all()]


@app.get(
    f"{settings.api_prefix}/data/{{username}}",
    response_model=list[ProfileDTO] | MessageResponse,
)
async def search_profiles(
    username: str,
    session: AsyncSession = Depends(get_session),
) -> list[ProfileDTO] | MessageResponse:
    """Case-insensitive partial match on username.

    Returns ``{"message": "no match found"}`` instead of an empty list.
    """
    escaped = username.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    query = (
        select(models.Profile)
        .where(models.Profile.username.ilike(f"%{escaped}%", escape="\\"))
        .order_by(models.Profile.username)
    )
    result = await session.execute(query)
    profiles = result.scalars().all()

    if not profiles:
        return MessageResponse(message=NO_MATCH_MESSAGE)

    return [ProfileDTO.model_validate(p) for p in profiles]
