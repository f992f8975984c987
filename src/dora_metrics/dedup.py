"""At-most-once insertion gate for fact rows keyed by their natural key."""

from __future__ import annotations

import logging
from typing import AbstractSet, Any, Callable, Hashable, List, Sequence, TypeVar

logger = logging.getLogger(__name__)

Row = TypeVar("Row")


def _natural_key(row: Any) -> Hashable:
    return row.key


def filter_new(
    candidates: Sequence[Row],
    existing_keys: AbstractSet[Hashable],
    key: Callable[[Row], Hashable] = _natural_key,
) -> List[Row]:
    """Return the candidates whose natural key is not already stored.

    Duplicate keys inside ``candidates`` keep their first occurrence. Producers
    are expected to yield unique keys; the in-batch check only guards the
    store against a double insert if one ever does not.
    """
    seen = set(existing_keys)
    new_rows: List[Row] = []
    duplicates = 0

    for row in candidates:
        row_key = key(row)
        if row_key in seen:
            if row_key not in existing_keys:
                duplicates += 1
            continue
        seen.add(row_key)
        new_rows.append(row)

    if duplicates:
        logger.warning(
            "Dropped duplicate keys from candidate batch",
            extra={"duplicates": duplicates},
        )
    return new_rows
