"""Client-side record set kept in step with table_update messages."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from tablewatch.realtime.errors import MalformedMessageError
from tablewatch.realtime.messages import TableUpdate, parse_server_message
from tablewatch.realtime.models import ChangeOperation, UpdateType

logger = logging.getLogger(__name__)


class ClientRecordSet:
    """Ordered records keyed by ``id``.

    A ``polling_refresh`` replaces everything, so whatever drift trigger
    events may have introduced is corrected by the next refresh. Nothing in
    here raises on bad input: malformed updates are logged and dropped.
    """

    def __init__(self, rows: Iterable[dict[str, Any]] = (), *, key: str = "id") -> None:
        self._key = key
        self._records: list[dict[str, Any]] = [dict(row) for row in rows]

    @property
    def records(self) -> list[dict[str, Any]]:
        return [dict(record) for record in self._records]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.records)

    def get(self, record_id: Any) -> dict[str, Any] | None:
        index = self._index_of(record_id)
        return dict(self._records[index]) if index is not None else None

    def replace(self, rows: Iterable[dict[str, Any]]) -> None:
        self._records = [dict(row) for row in rows]

    def apply_trigger(self, operation: ChangeOperation | str, record: dict[str, Any]) -> bool:
        """Apply one incremental change; returns True when local state changed."""
        try:
            op = ChangeOperation(operation)
        except ValueError:
            logger.warning("ignoring unknown trigger operation %r", operation)
            return False
        if not isinstance(record, dict) or self._key not in record:
            logger.warning("ignoring %s without '%s' field", op.value, self._key)
            return False

        record_id = record[self._key]
        index = self._index_of(record_id)
        if op is ChangeOperation.INSERT:
            if index is not None:
                return False
            self._records.append(dict(record))
            return True
        if op is ChangeOperation.UPDATE:
            if index is None:
                return False
            self._records[index] = {**self._records[index], **record}
            return True
        if index is None:
            return False
        del self._records[index]
        return True

    def apply_update(self, message: TableUpdate | dict[str, Any]) -> bool:
        if isinstance(message, dict):
            try:
                parsed = parse_server_message(message)
            except MalformedMessageError as exc:
                logger.warning("dropping malformed update: %s", exc)
                return False
            if not isinstance(parsed, TableUpdate):
                return False
            message = parsed

        if message.update_type is UpdateType.POLLING_REFRESH:
            if not isinstance(message.data, list) or not all(isinstance(row, dict) for row in message.data):
                logger.warning("dropping polling_refresh for %s: data is not a list of records", message.channel_id)
                return False
            self.replace(message.data)
            return True
        if message.operation is None:
            logger.warning("dropping database_trigger for %s without operation", message.channel_id)
            return False
        return self.apply_trigger(message.operation, message.data)

    def _index_of(self, record_id: Any) -> int | None:
        for index, record in enumerate(self._records):
            if record.get(self._key) == record_id:
                return index
        return None
