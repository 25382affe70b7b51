"""Complete pipeline orchestration for spreadsheet uploads.

Combines parsing, row normalization and reconciliation with storage.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from profile_ingest.parsers import read_upload
from profile_ingest.pipelines.normalization import SkippedRow, normalize_rows
from profile_ingest.pipelines.reconciliation import persist_new_profiles

logger = logging.getLogger(__name__)

SAVED_MESSAGE = "File uploaded and data saved"
NOTHING_NEW_MESSAGE = "No new data to save. All usernames already exist."
NO_VALID_ROWS_MESSAGE = "No new data to save. No valid rows found."


@dataclass
class IngestionReport:
    """Result of one spreadsheet upload."""
    filename: str
    total_rows: int
    inserted: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    collided: list[str] = field(default_factory=list)
    skipped_rows: list[SkippedRow] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.inserted:
            return SAVED_MESSAGE
        if self.duplicates or self.collided:
            return NOTHING_NEW_MESSAGE
        return NO_VALID_ROWS_MESSAGE


async def ingest_spreadsheet(
    session: AsyncSession,
    content: bytes,
    filename: str | None,
) -> IngestionReport:
    """Run one upload through ingestion, normalization and persistence.

    Steps:
    1. Validate and parse the first sheet (in a worker thread)
    2. Normalize rows, skipping rows without identity fields
    3. Insert profiles whose username is not stored yet

    Args:
        session: Database session
        content: Uploaded file bytes
        filename: Original filename

    Returns:
        IngestionReport with per-username outcome

    Raises:
        NoFileError, FormatError: If the upload is missing or unreadable
        StorageConnectionError, StorageWriteError: If storage fails
    """
    logger.info(f"Processing spreadsheet upload: {filename}")

    rows = await asyncio.to_thread(read_upload, content, filename)

    normalized = normalize_rows(rows)

    report = IngestionReport(
        filename=filename,
        total_rows=len(rows),
        skipped_rows=normalized.skipped,
    )
    if not normalized.candidates:
        logger.info(f"No valid rows in {filename}")
        return report

    persisted = await persist_new_profiles(session, normalized.candidates)
    report.inserted = persisted.inserted
    report.duplicates = persisted.duplicates
    report.collided = persisted.collided

    logger.info(
        f"Finished {filename}: {len(report.inserted)} inserted, "
        f"{len(report.duplicates)} duplicates, {len(report.collided)} collided, "
        f"{len(report.skipped_rows)} skipped"
    )
    return report
