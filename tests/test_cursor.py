from __future__ import annotations

import pytest

from bookflow.api.pagination import Cursor, CursorError, decode_cursor, decode_optional_cursor, encode_cursor


def test_cursor_roundtrip() -> None:
    c = Cursor(created_at=123.456, item_id="req_abc")
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.created_at == pytest.approx(c.created_at)
    assert decoded.item_id == c.item_id


def test_cursor_invalid() -> None:
    with pytest.raises(CursorError):
        decode_cursor("not-a-valid-cursor")
    with pytest.raises(CursorError):
        decode_cursor("   ")


def test_optional_cursor_passes_none_through() -> None:
    assert decode_optional_cursor(None) is None
    assert decode_optional_cursor("") is None
    assert decode_optional_cursor(encode_cursor(Cursor(1.5, "req_x"))) == (1.5, "req_x")
