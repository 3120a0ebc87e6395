"""Sequential nonce issuance for one signing identity.

Ledger: ``base`` is the lowest unconfirmed nonce, ``base + offset`` the next
one to hand out, and every pending nonce lies in ``[base, base + offset)``.
Confirmations may arrive out of order; ``base`` only moves past a nonce once
every lower nonce has confirmed.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from polyarb.live.chain import ChainClient
from polyarb.utils.resilience import with_timeout

log = structlog.get_logger()


class NonceAllocator:
    """Reserve/release/confirm nonce ledger backed by the chain's pending count."""

    def __init__(
        self,
        chain: ChainClient,
        address: str,
        *,
        stale_after_seconds: float = 60.0,
        max_pending: int = 50,
        call_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.chain = chain
        self.address = address
        self.stale_after_seconds = stale_after_seconds
        self.max_pending = max_pending
        self.call_timeout = call_timeout
        self.clock = clock

        self.base: int | None = None
        self.offset = 0
        self.pending: set[int] = set()
        self.last_reset_time: float | None = None
        self._confirmed_ahead: set[int] = set()
        self._needs_resync = False
        self._lock = asyncio.Lock()

    def _should_resync(self) -> bool:
        if self.base is None or self._needs_resync:
            return True
        if len(self.pending) > self.max_pending:
            return True
        stale = (
            self.last_reset_time is None
            or self.clock() - self.last_reset_time > self.stale_after_seconds
        )
        # A stale ledger with transactions in flight keeps tracking them.
        return stale and not self.pending

    async def resync(self) -> int:
        """Reset the ledger from the chain's pending-nonce view."""
        chain_nonce = await with_timeout(
            self.chain.get_nonce(self.address), self.call_timeout, "nonce sync timed out"
        )
        dropped = len(self.pending)
        self.base = chain_nonce
        self.offset = 0
        self.pending.clear()
        self._confirmed_ahead.clear()
        self._needs_resync = False
        self.last_reset_time = self.clock()
        log.info("nonce.resynced", address=self.address, base=chain_nonce, dropped_pending=dropped)
        return chain_nonce

    async def next_nonce(self) -> int:
        async with self._lock:
            if self._should_resync():
                await self.resync()
            assert self.base is not None
            nonce = self.base + self.offset
            self.offset += 1
            self.pending.add(nonce)
            log.debug("nonce.issued", nonce=nonce, pending=len(self.pending))
            return nonce

    def release(self, nonce: int) -> None:
        """Return an unused nonce; ``base`` never moves.

        The most recently issued nonce is handed out again. A released nonce
        below the top leaves a gap that only the chain can resolve, so the
        next issuance resyncs.
        """
        if nonce not in self.pending:
            return
        self.pending.discard(nonce)
        assert self.base is not None
        if nonce == self.base + self.offset - 1:
            self.offset -= 1
        else:
            self._needs_resync = True
        log.debug("nonce.released", nonce=nonce, base=self.base, offset=self.offset)

    def invalidate(self) -> None:
        """Force a resync on the next issuance (chain state is ahead of the ledger)."""
        self._needs_resync = True

    def confirm(self, nonce: int) -> None:
        """Mark ``nonce`` mined and advance ``base`` across the confirmed prefix."""
        if self.base is None or not self.base <= nonce < self.base + self.offset:
            log.debug("nonce.confirm_out_of_range", nonce=nonce, base=self.base)
            return
        self.pending.discard(nonce)
        self._confirmed_ahead.add(nonce)
        while self.base in self._confirmed_ahead:
            self._confirmed_ahead.discard(self.base)
            self.base += 1
            self.offset -= 1
        log.debug("nonce.confirmed", nonce=nonce, base=self.base, offset=self.offset)

    def snapshot(self) -> dict[str, object]:
        return {
            "base": self.base,
            "offset": self.offset,
            "next": None if self.base is None else self.base + self.offset,
            "pending": sorted(self.pending),
        }
