"""Cursor encoding helpers."""

import uuid
from datetime import datetime, timezone

import pytest

from boilerhub.storage.cursors import (
    decode_id_cursor,
    decode_time_id_cursor,
    encode_id_cursor,
    encode_time_id_cursor,
    is_uuid,
)


class TestIdCursor:
    def test_round_trip(self):
        identifier = str(uuid.uuid4())
        assert decode_id_cursor(encode_id_cursor(identifier)) == identifier

    def test_cursor_is_url_safe_and_unpadded(self):
        cursor = encode_id_cursor("a?b")
        assert "=" not in cursor
        assert "+" not in cursor and "/" not in cursor

    @pytest.mark.parametrize("cursor", ["", "===", "éééé", "//8"])
    def test_malformed_cursors_raise(self, cursor):
        with pytest.raises(ValueError):
            decode_id_cursor(cursor)


class TestTimeIdCursor:
    def test_naive_timestamps_are_treated_as_utc(self):
        created = datetime(2024, 5, 1, 12, 30, 15, 123456)
        ts, identifier = decode_time_id_cursor(encode_time_id_cursor(created, "abc"))
        assert ts == created.replace(tzinfo=timezone.utc)
        assert identifier == "abc"

    @pytest.mark.parametrize("cursor", ["garbage", "2024-01-01T00:00:00|", "not-a-date|id"])
    def test_malformed_cursors_raise(self, cursor):
        with pytest.raises(ValueError):
            decode_time_id_cursor(cursor)


def test_is_uuid():
    assert is_uuid(str(uuid.uuid4()))
    assert not is_uuid("42")
    assert not is_uuid("")
