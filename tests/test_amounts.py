from __future__ import annotations

import pytest

from bookflow.utils.amounts import parse_price, round_to_precision


@pytest.mark.parametrize(
    "value,precision,expected",
    [
        (1.005, 2, 1.01),
        (2.675, 2, 2.68),
        (-1.005, 2, -1.01),
        (7.0, 2, 7.0),
        ("3.14159", 3, 3.142),
        (12.5, 0, 13.0),
    ],
)
def test_round_half_away_from_zero(value: object, precision: int, expected: float) -> None:
    assert round_to_precision(value, precision) == expected


def test_round_none_and_invalid() -> None:
    assert round_to_precision(None) is None
    with pytest.raises(ValueError):
        round_to_precision("abc")
    with pytest.raises(ValueError):
        round_to_precision(float("nan"))


@pytest.mark.parametrize(
    "text,expected",
    [
        ("$1,299.99", 1299.99),
        ("12,50 €", 12.5),
        ("£7", 7.0),
        ("1.234,56", 1234.56),
        ("", None),
        (None, None),
        ("free", None),
    ],
)
def test_parse_price(text: str | None, expected: float | None) -> None:
    assert parse_price(text) == expected
