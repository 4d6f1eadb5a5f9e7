"""Current-state snapshots for polling_refresh updates and the list endpoint."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from typing import Any

from pydantic_core import to_jsonable_python

from tablewatch.realtime.catalog import TableBinding
from tablewatch.realtime.filters import QueryFilters


def snapshot_checksum(rows: list[dict[str, Any]]) -> str:
    payload = json.dumps(to_jsonable_python(rows), sort_keys=True, separators=(",", ":"))
    return hashlib.md5(payload.encode("utf-8"), usedforsecurity=False).hexdigest()


class SnapshotLoader:
    """Load one page of a table exactly as a subscriber's filters describe it."""

    def __init__(self, page_size: int | Callable[[], int] = 100) -> None:
        self._page_size = page_size

    @property
    def page_size(self) -> int:
        return self._page_size() if callable(self._page_size) else self._page_size

    async def load(self, binding: TableBinding, filters: QueryFilters) -> list[dict[str, Any]]:
        page_size = self.page_size
        return await binding.source.query_rows(
            binding.table,
            filters.predicate(),
            filters.order_by(),
            page_size,
            offset=filters.offset(page_size),
            fields=filters.select_fields(binding.config.key_column),
        )
