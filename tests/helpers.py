"""Builders for spreadsheet payloads used across tests."""

from __future__ import annotations

import io

from openpyxl import Workbook

HEADERS = [
    "Instagram ID", "Username", "Full name", "Profile link", "Avatar pic",
    "Followed by viewer", "Is verified", "Followers count", "Following count",
    "Biography", "Public email", "Posts count", "Phone country code",
    "Phone number", "City", "Address", "Is private", "Is business", "External url",
]


def profile_row(instagram_id, username, extra: dict | None = None) -> dict:
    """A spreadsheet row keyed by header name."""
    row = {
        "Instagram ID": instagram_id,
        "Username": username,
        "Full name": f"{username.title()} Example" if username else None,
        "Profile link": f"https://instagram.com/{username}" if username else None,
        "Followed by viewer": "NO",
        "Is verified": "YES",
        "Followers count": 1200,
        "Following count": 300,
        "Posts count": 42,
        "City": "Berlin",
        "Is private": "NO",
        "Is business": "YES",
    }
    row.update(extra or {})
    return row


def build_workbook(rows: list[dict], headers: list[str] = HEADERS, extra_sheet: bool = False) -> bytes:
    """Serialize rows into an .xlsx payload; the first sheet holds the data."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Profiles"
    ws.append(headers)
    for row in rows:
        ws.append([row.get(h) for h in headers])
    if extra_sheet:
        other = wb.create_sheet("Other")
        other.append(headers)
        other.append(["999", "from_second_sheet"])
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
