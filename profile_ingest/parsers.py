"""Spreadsheet ingestion utilities.

Validates uploaded files, optionally stages them on disk, and parses the first
sheet into raw row mappings keyed by the header row.
"""
from __future__ import annotations

import io
import logging
import time
import uuid
from pathlib import Path
from typing import Any, BinaryIO

import pandas as pd

from .config import settings

logger = logging.getLogger(__name__)

RawRow = dict[str, Any]

# Reserved RawRow key holding the sheet row a record came from (header is row 1)
ROW_NUMBER_KEY = "__row_number__"
FIRST_DATA_ROW = 2


class NoFileError(Exception):
    """Raised when the request carries no file."""
    pass


class FormatError(Exception):
    """Raised when an upload is not a readable spreadsheet of an allowed type."""
    pass


def validate_upload(filename: str | None, size: int | None = None) -> None:
    """Check that a file is present and declared as an allowed spreadsheet.

    Args:
        filename: Original filename from the multipart part, if any
        size: Payload size in bytes, when known

    Raises:
        NoFileError: If no file was attached
        FormatError: If the extension is not allowed or the file is too large
    """
    if not filename:
        raise NoFileError("No file uploaded")

    suffix = Path(filename).suffix.lower()
    allowed = settings.upload.allowed_extensions
    if suffix not in allowed:
        raise FormatError(
            f"Invalid file format '{suffix or filename}'. Please upload an Excel file "
            f"({', '.join(allowed)})."
        )

    if size is not None:
        max_bytes = settings.upload.max_file_size_mb * 1024 * 1024
        if size > max_bytes:
            raise FormatError(
                f"File size ({size / 1024 / 1024:.1f} MB) exceeds maximum allowed "
                f"({settings.upload.max_file_size_mb} MB)"
            )


def stage_upload(content: bytes, filename: str, directory: str | Path | None = None) -> Path:
    """Write an upload under the staging directory with a collision-free name.

    The directory is created on first use. Names combine the ingestion time in
    milliseconds with a short random suffix, keeping the original extension.
    """
    target_dir = Path(directory or settings.upload.dir)
    target_dir.mkdir(parents=True, exist_ok=True)

    name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{Path(filename).suffix.lower()}"
    path = target_dir / name
    path.write_bytes(content)

    logger.info(f"Staged upload {filename} at {path} ({len(content)} bytes)")
    return path


def parse_spreadsheet(source: bytes | BinaryIO | str | Path) -> list[RawRow]:
    """Parse the first sheet of a workbook into row dictionaries.

    Args:
        source: Raw bytes, a binary file object, or a path to the workbook

    Returns:
        One dict per data row, keyed by header cell value. Empty cells are None.
        Each dict also carries its sheet row under ``ROW_NUMBER_KEY``; blank
        rows are dropped without renumbering the rows after them.

    Raises:
        FormatError: If the payload cannot be read as a spreadsheet
    """
    if isinstance(source, (bytes, bytearray)):
        source = io.BytesIO(source)

    try:
        df = pd.read_excel(source, sheet_name=0, engine='openpyxl', dtype=object)
    except Exception as e:
        logger.error(f"Excel parsing failed: {e}")
        raise FormatError(f"Failed to parse Excel file: {e}") from e

    df = df.dropna(how='all')
    if df.empty:
        logger.info("Excel sheet has no data rows")
        return []

    df.columns = [str(c).strip() for c in df.columns]
    df = df.astype(object).where(pd.notna(df), None)

    logger.info(f"Parsed Excel with {len(df)} rows and {len(df.columns)} columns")

    # read_excel keeps blank rows, so the index still maps to the sheet row
    rows = df.to_dict('records')
    for index, row in zip(df.index, rows):
        row[ROW_NUMBER_KEY] = int(index) + FIRST_DATA_ROW

    return rows


def read_upload(content: bytes, filename: str | None) -> list[RawRow]:
    """Validate, optionally stage, and parse an uploaded spreadsheet."""
    validate_upload(filename, len(content))

    if settings.upload.stage_to_disk:
        path = stage_upload(content, filename)
        return parse_spreadsheet(path)

    return parse_spreadsheet(content)
