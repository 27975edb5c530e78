from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import TransientLedgerError, VerificationTimedOut
from .ledger import LedgerClient
from .models import Challenge, TransferEvent
from .project_constants import FETCH_ATTEMPTS, FETCH_SPACING_S

log = logging.getLogger("gate.watcher")

Sleep = Callable[[float], Awaitable[None]]


class DepositWatcher:
    """Polls the ledger until a transfer for a challenge shows up.

    Returns the decoded TransferEvent, or None when the transaction found
    holds no transfer of the expected program (terminal). Raises
    VerificationTimedOut when the challenge expires or the ledger keeps
    failing past the retry bound.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        poll_interval_s: float = 5.0,
        fetch_attempts: int = FETCH_ATTEMPTS,
        fetch_spacing_s: float = FETCH_SPACING_S,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.poll_interval_s = poll_interval_s
        self.fetch_attempts = fetch_attempts
        self.fetch_spacing_s = fetch_spacing_s
        self._sleep = sleep
        self._clock = clock

    async def _fetch_parsed(self, signature: str) -> Dict[str, Any]:
        for attempt in range(1, self.fetch_attempts + 1):
            try:
                tx = await self.ledger.get_parsed_transaction(signature)
            except TransientLedgerError as e:
                log.warning("Fetch %s failed (attempt %d): %s", signature, attempt, e)
                tx = None
            if tx is not None:
                return tx
            if attempt < self.fetch_attempts:
                await self._sleep(self.fetch_spacing_s)
        raise VerificationTimedOut(
            f"Transaction {signature} not available after {self.fetch_attempts} attempts"
        )

    async def _decode(self, challenge: Challenge, signature: str) -> Optional[TransferEvent]:
        tx = await self._fetch_parsed(signature)
        try:
            event = await self.ledger.transfer_from(
                tx, signature, challenge.asset, challenge.deposit_address
            )
        except TransientLedgerError as e:
            raise VerificationTimedOut(f"Owner lookup for {signature}: {e}") from e
        if event is None:
            log.info("Session %s: %s holds no %s transfer", challenge.session_key, signature, challenge.asset.value)
        return event

    async def watch_address(
        self, challenge: Challenge, timeout_s: Optional[float] = None
    ) -> Optional[TransferEvent]:
        deadline = None if timeout_s is None else self._clock() + timeout_s
        address = challenge.deposit_address
        log.info("Session %s: watching %s", challenge.session_key, address)

        while True:
            try:
                signatures = await self.ledger.poll_signatures_for(address)
            except TransientLedgerError as e:
                log.warning("Polling %s failed: %s", address, e)
                signatures = []

            if signatures:
                log.info("Session %s: got signature %s", challenge.session_key, signatures[0])
                return await self._decode(challenge, signatures[0])

            if deadline is not None and self._clock() >= deadline:
                raise VerificationTimedOut(f"No transfer to {address} within {timeout_s}s")
            await self._sleep(self.poll_interval_s)

    async def watch_signature(
        self, challenge: Challenge, timeout_s: Optional[float] = None
    ) -> Optional[TransferEvent]:
        signature = challenge.expected_signature
        if not signature:
            raise ValueError("watch_signature needs a challenge with expected_signature")

        try:
            status = await self.ledger.get_signature_status(signature)
        except TransientLedgerError as e:
            raise VerificationTimedOut(f"Status of {signature}: {e}") from e
        if status is None or status.failed:
            log.info("Session %s: signature %s unknown or failed", challenge.session_key, signature)
            return None

        if not status.settled:
            try:
                ok = await self.ledger.await_confirmation(signature, timeout_s)
            except asyncio.TimeoutError:
                raise VerificationTimedOut(f"{signature} not confirmed within {timeout_s}s")
            except TransientLedgerError as e:
                raise VerificationTimedOut(f"Confirmation of {signature}: {e}") from e
            if not ok:
                log.info("Session %s: %s landed with an error", challenge.session_key, signature)
                return None

        return await self._decode(challenge, signature)
