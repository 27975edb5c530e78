from __future__ import annotations

import logging

from .models import (
    Challenge,
    Decision,
    KeyingStrategy,
    PendingKey,
    TransferEvent,
    Verdict,
)
from .store import TransferStore

log = logging.getLogger("gate.confirm")


class ConfirmationProtocol:
    """Decides whether a candidate transfer satisfies a challenge's claim.

    The final confirm is one conditional write in the store, so two sessions
    racing on the same payment cannot both win. Every non-confirmed terminal
    path purges the session's unconfirmed rows so a fresh attempt can start.
    """

    def __init__(
        self,
        store: TransferStore,
        keying: KeyingStrategy = KeyingStrategy.SESSION,
        enforce_unique_source: bool = True,
    ) -> None:
        self.store = store
        self.keying = keying
        self.enforce_unique_source = enforce_unique_source

    def key_for(self, challenge: Challenge, event: TransferEvent) -> PendingKey:
        if self.keying is KeyingStrategy.SOURCE:
            return PendingKey(
                destination=event.destination,
                session_key=challenge.session_key,
                source=event.source,
            )
        return PendingKey(destination=event.destination, session_key=challenge.session_key)

    async def _terminal(self, challenge: Challenge, verdict: Verdict, return_funds: bool = False) -> Decision:
        purged = await self.store.delete_pending_for(challenge.session_key)
        log.info(
            "Session %s: %s (purged %d pending)", challenge.session_key, verdict.value, purged
        )
        return Decision(verdict, return_funds=return_funds)

    async def resolve(self, challenge: Challenge, event: TransferEvent) -> Decision:
        if not event.is_complete:
            # Nothing to claim against; leave the store untouched.
            return Decision(Verdict.NO_MATCH)

        if event.mint is not None and event.mint != challenge.token_mint:
            return await self._terminal(challenge, Verdict.NO_MATCH)

        key = self.key_for(challenge, event)
        record = await self.store.find_pending(key)
        if record is None or record.session_key != challenge.session_key:
            return await self._terminal(challenge, Verdict.NO_MATCH)

        event_time = event.time
        if event_time is None or event_time < record.created_at.replace(microsecond=0):
            log.warning(
                "Session %s: %s predates the challenge, ignoring",
                challenge.session_key,
                event.signature,
            )
            return await self._terminal(challenge, Verdict.NO_MATCH)

        if record.amount is not None and record.amount != event.amount:
            if await self.store.signature_settled(event.signature):
                log.warning(
                    "Session %s: %s was already settled, not returning it again",
                    challenge.session_key,
                    event.signature,
                )
                return await self._terminal(challenge, Verdict.NO_MATCH)
            log.info(
                "Session %s: expected %d, received %d",
                challenge.session_key,
                record.amount,
                event.amount,
            )
            return await self._terminal(challenge, Verdict.AMOUNT_MISMATCH, return_funds=True)

        rows = await self.store.confirm_atomic(
            key,
            expected_amount=record.amount,
            signature=event.signature,
            source=event.source,
            received=event.amount,
            block_time=event_time,
        )
        if rows != 1:
            log.warning("Session %s: lost the claim on %s", challenge.session_key, event.signature)
            return await self._terminal(challenge, Verdict.NO_MATCH)

        duplicate = False
        if self.enforce_unique_source:
            duplicate = await self.store.source_bound(
                event.source, challenge.token_mint, excluding_signature=event.signature
            )
        # Leftover half-open rows from earlier attempts of this session.
        await self.store.delete_pending_for(challenge.session_key)
        log.info(
            "Session %s: confirmed %s from %s (duplicate wallet: %s)",
            challenge.session_key,
            event.signature,
            event.source,
            duplicate,
        )
        return Decision(Verdict.CONFIRMED, return_funds=duplicate, duplicate_wallet=duplicate)
