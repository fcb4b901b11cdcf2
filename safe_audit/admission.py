# safe_audit/admission.py
"""
Bounded-concurrency admission for expensive audit work.

At most ``max_concurrent`` permits are held at once. Further callers queue in
strict FIFO order and are admitted one at a time as permits are released. A
released permit is handed directly to the oldest waiter, so a newcomer can
never slip in ahead of someone already queued.

All state is confined to the event loop that uses the controller; every
mutation happens between awaits, which makes the loop itself the lock.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Deque, Literal, Optional, Tuple

log = logging.getLogger(__name__)

PermitState = Literal["waiting", "holding", "released"]


@dataclass
class Permit:
    ticket: int
    state: PermitState = "waiting"
    # Order in which permits were actually granted (1, 2, 3, ...).
    admitted_seq: Optional[int] = field(default=None)


class AdmissionController:
    def __init__(self, max_concurrent: int = 2):
        if int(max_concurrent) < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = int(max_concurrent)
        self._in_flight = 0
        self._waiters: Deque[Tuple[asyncio.Future, Permit]] = deque()
        self._tickets = itertools.count(1)
        self._admissions = itertools.count(1)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return sum(1 for fut, _ in self._waiters if not fut.done())

    def _grant(self, permit: Permit) -> Permit:
        permit.state = "holding"
        permit.admitted_seq = next(self._admissions)
        return permit

    async def acquire(self) -> Permit:
        """Wait (without timeout) for a free slot and return a held Permit."""
        permit = Permit(ticket=next(self._tickets))
        if self._in_flight < self.max_concurrent and not self._waiters:
            self._in_flight += 1
            log.debug("Permit %d admitted immediately (%d in flight).", permit.ticket, self._in_flight)
            return self._grant(permit)

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters.append((fut, permit))
        log.info(
            "Permit %d queued (%d in flight, %d waiting).",
            permit.ticket,
            self._in_flight,
            len(self._waiters),
        )
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # The slot was handed over just as we were cancelled; pass it on.
                self._grant(permit)
                self.release(permit)
            else:
                self._remove_waiter(fut)
            raise
        log.debug("Permit %d admitted after waiting.", permit.ticket)
        return self._grant(permit)

    def _remove_waiter(self, fut: asyncio.Future) -> None:
        for item in self._waiters:
            if item[0] is fut:
                self._waiters.remove(item)
                return

    def release(self, permit: Permit) -> None:
        """Give the slot back, waking exactly one queued caller if any."""
        if permit.state != "holding":
            raise RuntimeError(f"Permit {permit.ticket} released while {permit.state}")
        permit.state = "released"

        while self._waiters:
            fut, waiting = self._waiters.popleft()
            if fut.done():
                continue
            # Hand-off: the slot moves to the waiter, in_flight is unchanged.
            fut.set_result(None)
            log.debug("Permit %d handed slot to permit %d.", permit.ticket, waiting.ticket)
            return

        self._in_flight -= 1
        log.debug("Permit %d released (%d in flight).", permit.ticket, self._in_flight)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[Permit]:
        permit = await self.acquire()
        try:
            yield permit
        finally:
            self.release(permit)
