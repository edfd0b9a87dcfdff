from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation


DEFAULT_PRECISION = 2


def round_to_precision(value: float | int | str | None, precision: int = DEFAULT_PRECISION) -> float | None:
    """Round half away from zero to `precision` decimal places; None stays None.

    Goes through Decimal(str(x)) so 1.005 rounds to 1.01 rather than 1.0.
    Idempotent: rounding an already rounded value returns it unchanged.
    """
    if value is None:
        return None
    try:
        d = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Not a number: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"Not a finite number: {value!r}")
    quantum = Decimal(1).scaleb(-int(precision))
    return float(d.quantize(quantum, rounding=ROUND_HALF_UP))


def parse_price(text: str | None) -> float | None:
    """Parse a display price like '$1,299.99' or '12,50 €' into a float."""
    if not text:
        return None
    s = "".join(ch for ch in str(text) if ch.isdigit() or ch in ".,")
    if not s:
        return None
    if "," in s and "." in s:
        # The right-most separator is the decimal one.
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        head, _, tail = s.rpartition(",")
        s = f"{head.replace(',', '')}.{tail}" if len(tail) == 2 else s.replace(",", "")
    try:
        return float(s)
    except ValueError:
        return None
