"""Table of outbound control requests awaiting a response."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..errors import ControlError


@dataclass(slots=True)
class _PendingEntry:
    subtype: str
    future: asyncio.Future[Any]


class PendingRequests:
    """Maps request ids to the futures their callers are awaiting.

    Every mutation is synchronous, so under cooperative scheduling an entry is
    inserted, completed, or removed in one step. Completing an id that is
    unknown or already done is a no-op that reports False.
    """

    def __init__(self) -> None:
        self._entries: dict[str, _PendingEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def register(self, request_id: str, subtype: str) -> asyncio.Future[Any]:
        if request_id in self._entries:
            raise ValueError(f"Duplicate control request id: {request_id}")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._entries[request_id] = _PendingEntry(subtype=subtype, future=future)
        return future

    def resolve(self, request_id: Any, payload: Any) -> bool:
        entry = self._entries.pop(request_id, None) if isinstance(request_id, str) else None
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(payload)
        return True

    def reject(self, request_id: Any, message: str) -> bool:
        entry = self._entries.pop(request_id, None) if isinstance(request_id, str) else None
        if entry is None or entry.future.done():
            return False
        entry.future.set_exception(ControlError(message, subtype=entry.subtype))
        return True

    def discard(self, request_id: str) -> None:
        self._entries.pop(request_id, None)

    def fail_all(self, make_error: Callable[[str], BaseException]) -> int:
        """Fail every outstanding entry with ``make_error(subtype)`` and clear the table."""
        entries = list(self._entries.values())
        self._entries.clear()
        failed = 0
        for entry in entries:
            if not entry.future.done():
                entry.future.set_exception(make_error(entry.subtype))
                failed += 1
        return failed
