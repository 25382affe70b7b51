"""Row normalization: spreadsheet headers to profile fields.

Pure functions only; no I/O. A row missing an identity column is rejected on
its own without affecting the rest of the upload.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable, Mapping

from profile_ingest.parsers import FIRST_DATA_ROW, ROW_NUMBER_KEY

logger = logging.getLogger(__name__)

# Spreadsheet header -> profile attribute
FIELD_MAP: dict[str, str] = {
    "Instagram ID": "external_id",
    "Username": "username",
    "Full name": "full_name",
    "Profile link": "profile_url",
    "Avatar pic": "avatar_url",
    "Followed by viewer": "followed_by_viewer",
    "Is verified": "is_verified",
    "Followers count": "followers_count",
    "Following count": "following_count",
    "Biography": "biography",
    "Public email": "public_email",
    "Posts count": "posts_count",
    "Phone country code": "phone_country_code",
    "Phone number": "phone_number",
    "City": "city",
    "Address": "address",
    "Is private": "is_private",
    "Is business": "is_business",
    "External url": "external_url",
}

REQUIRED_COLUMNS: tuple[str, ...] = ("Instagram ID", "Username")

BOOLEAN_FIELDS = frozenset({"followed_by_viewer", "is_verified", "is_private", "is_business"})
COUNT_FIELDS = frozenset({"followers_count", "following_count", "posts_count"})
# Largest value a BIGINT count column holds
COUNT_MAX = 2 ** 63 - 1

# Exact-match lookup; anything else passes through untouched.
BOOLEAN_COERCION: dict[str, bool] = {"YES": True, "NO": False}


class RowValidationError(Exception):
    """Raised when a row lacks a mandatory identity column."""

    def __init__(self, row_number: int, missing: list[str]):
        self.row_number = row_number
        self.missing = missing
        super().__init__(f"Row {row_number}: missing required fields: {', '.join(missing)}")


@dataclass
class ProfileCandidate:
    """A normalized profile that has not been stored yet."""
    external_id: str
    username: str
    full_name: str | None = None
    profile_url: str | None = None
    avatar_url: str | None = None
    followed_by_viewer: Any = None
    is_verified: Any = None
    followers_count: int | None = None
    following_count: int | None = None
    biography: str | None = None
    public_email: str | None = None
    posts_count: int | None = None
    phone_country_code: str | None = None
    phone_number: str | None = None
    city: str | None = None
    address: str | None = None
    is_private: Any = None
    is_business: Any = None
    external_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SkippedRow:
    """A row rejected during normalization."""
    row_number: int
    reason: str


@dataclass
class NormalizationResult:
    candidates: list[ProfileCandidate] = field(default_factory=list)
    skipped: list[SkippedRow] = field(default_factory=list)


def coerce_flag(value: Any) -> Any:
    """Map ``"YES"``/``"NO"`` to booleans; return any other value unchanged."""
    if isinstance(value, str):
        return BOOLEAN_COERCION.get(value, value)
    return value


def to_text(value: Any) -> str | None:
    """Render a cell as stripped text. Integral floats lose their ``.0``."""
    if value is None:
        return None
    if isinstance(value, float):
        if math.isnan(value):
            return None
        if value.is_integer():
            value = int(value)
    text = str(value).strip()
    return text or None


def to_count(value: Any) -> int | None:
    """Parse a non-negative count; unparseable values become None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float):
        if math.isnan(value) or not value.is_integer():
            return None
        value = int(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned.isdigit():
            return None
        value = int(cleaned)
    if isinstance(value, int) and 0 <= value <= COUNT_MAX:
        return value
    return None


def normalize_row(row: Mapping[str, Any], row_number: int = FIRST_DATA_ROW) -> ProfileCandidate:
    """Map one raw spreadsheet row to a profile candidate.

    Args:
        row: Header -> cell value mapping
        row_number: Spreadsheet row number, used in error messages

    Returns:
        ProfileCandidate with renamed and coerced fields

    Raises:
        RowValidationError: If Instagram ID or Username is blank
    """
    missing = [column for column in REQUIRED_COLUMNS if to_text(row.get(column)) is None]
    if missing:
        raise RowValidationError(row_number, missing)

    values: dict[str, Any] = {}
    for column, attribute in FIELD_MAP.items():
        raw = row.get(column)
        if attribute in BOOLEAN_FIELDS:
            values[attribute] = coerce_flag(raw)
        elif attribute in COUNT_FIELDS:
            values[attribute] = to_count(raw)
        else:
            values[attribute] = to_text(raw)

    return ProfileCandidate(**values)


def normalize_rows(rows: Iterable[Mapping[str, Any]]) -> NormalizationResult:
    """Normalize every row, collecting rejected rows instead of aborting.

    Rows are numbered from ``ROW_NUMBER_KEY`` when the parser set it, otherwise
    by position after the header.
    """
    result = NormalizationResult()

    for offset, row in enumerate(rows):
        row_number = row.get(ROW_NUMBER_KEY, FIRST_DATA_ROW + offset)
        try:
            result.candidates.append(normalize_row(row, row_number))
        except RowValidationError as e:
            logger.warning(f"Skipping row: {e}")
            result.skipped.append(SkippedRow(row_number=row_number, reason=str(e)))

    logger.info(
        f"Normalized {len(result.candidates)} rows, skipped {len(result.skipped)}"
    )
    return result
