"""Bookkeeping for requests written to the wire that await a response."""

from __future__ import annotations

import heapq
import itertools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from rpcweave.context import Context
from rpcweave.messages import Response


class DeadlineExceededError(Exception):
    """The request exceeded its deadline."""

    def __init__(self) -> None:
        super().__init__("the request exceeded its deadline")


class AlreadyExistsError(Exception):
    """A request with the same ID is already in flight."""

    def __init__(self, request_id: int) -> None:
        super().__init__(f"request {request_id} is already in flight")
        self.request_id = request_id


@dataclass
class _RequestData:
    ctx: Context
    response_completion: Any
    sequence: int


class InFlightRequests:
    """Requests already sent that have not yet received responses.

    Each request carries a completion future, which is resolved with the
    :class:`Response` when it arrives, or failed with
    :class:`DeadlineExceededError` once the request's deadline passes.
    """

    def __init__(self) -> None:
        self._requests: Dict[int, _RequestData] = {}
        self._deadlines: List[Tuple[datetime, int, int]] = []
        self._sequence = itertools.count()

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._requests

    def is_empty(self) -> bool:
        """Return True if no requests are in flight."""
        return not self._requests

    def insert_request(self, request_id: int, ctx: Context, response_completion: Any) -> None:
        """Start tracking a request, unless one with the same ID is in flight."""
        if request_id in self._requests:
            raise AlreadyExistsError(request_id)
        sequence = next(self._sequence)
        self._requests[request_id] = _RequestData(ctx, response_completion, sequence)
        heapq.heappush(self._deadlines, (ctx.deadline, sequence, request_id))

    def complete_request(self, response: Response) -> bool:
        """Hand ``response`` to its waiting caller. Return True if the request was found."""
        data = self._requests.pop(response.request_id, None)
        if data is None:
            # The request was already canceled or timed out.
            return False
        if not data.response_completion.done():
            data.response_completion.set_result(response)
        return True

    def cancel_request(self, request_id: int) -> Optional[Context]:
        """Stop tracking a request without completing it; return its context if found."""
        data = self._requests.pop(request_id, None)
        return None if data is None else data.ctx

    def _drop_stale(self) -> None:
        while self._deadlines:
            _, sequence, request_id = self._deadlines[0]
            data = self._requests.get(request_id)
            if data is not None and data.sequence == sequence:
                return
            heapq.heappop(self._deadlines)

    def next_deadline(self) -> Optional[datetime]:
        """Return the earliest deadline among requests in flight, if any."""
        self._drop_stale()
        return self._deadlines[0][0] if self._deadlines else None

    def pop_expired(self, now: Optional[datetime] = None) -> List[int]:
        """Fail every request whose deadline is at or before ``now``; return their IDs."""
        if now is None:
            now = datetime.now(timezone.utc)
        expired: List[int] = []
        while True:
            self._drop_stale()
            if not self._deadlines or self._deadlines[0][0] > now:
                return expired
            _, _, request_id = heapq.heappop(self._deadlines)
            data = self._requests.pop(request_id)
            if not data.response_completion.done():
                data.response_completion.set_exception(DeadlineExceededError())
            expired.append(request_id)