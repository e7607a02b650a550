from __future__ import annotations

from typing import Callable, Iterator

from relay.models import PendingCommand


class PendingCommandTable:
    """Dispatched commands keyed by request id.

    Not locked itself; the hub holds its lock around every call. Removing a
    row always cancels its expiry timer.
    """

    def __init__(self) -> None:
        self._rows: dict[str, PendingCommand] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[PendingCommand]:
        return iter(list(self._rows.values()))

    def get(self, request_id: str | None) -> PendingCommand | None:
        if request_id is None:
            return None
        return self._rows.get(request_id)

    def insert(self, row: PendingCommand) -> None:
        if row.request_id in self._rows:
            raise KeyError(f"Request id already in flight: {row.request_id}")
        self._rows[row.request_id] = row

    def pop(self, request_id: str) -> PendingCommand | None:
        row = self._rows.pop(request_id, None)
        if row is not None:
            row.cancel_timer()
        return row

    def pop_where(self, predicate: Callable[[PendingCommand], bool]) -> list[PendingCommand]:
        matched = [row for row in self._rows.values() if predicate(row)]
        for row in matched:
            self.pop(row.request_id)
        return matched
