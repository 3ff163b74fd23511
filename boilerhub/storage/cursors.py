from __future__ import annotations

import base64
import binascii
import uuid
from datetime import datetime, timezone
from typing import Tuple


def encode_time_id_cursor(created_at: datetime, identifier: str) -> str:
    """Encode a cursor combining a timestamp and identifier for keyset paging."""

    ts = created_at if created_at.tzinfo else created_at.replace(tzinfo=timezone.utc)
    return f"{ts.isoformat()}|{identifier}"


def decode_time_id_cursor(cursor: str) -> Tuple[datetime, str]:
    """Decode a time/id cursor into timestamp and identifier."""

    parts = cursor.split("|", 1)
    if len(parts) != 2 or not parts[1]:
        raise ValueError("invalid user cursor")
    ts = datetime.fromisoformat(parts[0])
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts, parts[1]


def encode_id_cursor(identifier: str) -> str:
    """Encode an opaque connection cursor for a row id."""

    return base64.urlsafe_b64encode(identifier.encode("utf-8")).decode("ascii").rstrip("=")


def decode_id_cursor(cursor: str) -> str:
    """Decode an opaque connection cursor back to the row id."""

    if not cursor:
        raise ValueError("invalid cursor")
    padded = cursor + "=" * (-len(cursor) % 4)
    try:
        identifier = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as exc:
        raise ValueError("invalid cursor") from exc
    if not identifier:
        raise ValueError("invalid cursor")
    return identifier


def is_uuid(value: str) -> bool:
    """True when ``value`` parses as a UUID (row ids are UUIDs in both stores)."""

    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True
