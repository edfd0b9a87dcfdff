from __future__ import annotations

from typing import Sequence, TypeVar


T = TypeVar("T")


def partition(items: Sequence[T], batch_size: int) -> list[list[T]]:
    """Split `items` into ceil(N/B) consecutive batches of at most `batch_size`.

    Order is preserved within and across batches; an empty input yields no batches.
    """
    size = int(batch_size)
    if size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size!r}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
