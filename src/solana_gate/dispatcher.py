from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from .chat import ChatPlatform
from .eligibility import EligibilityEvaluator
from .errors import (
    DuplicateRefund,
    EligibilityLookupError,
    InviteIssuanceFailed,
    RefundFailed,
    TransientLedgerError,
)
from .keypairs import KeyRing
from .ledger import LedgerClient
from .models import (
    Challenge,
    Decision,
    DepositAsset,
    EligibilitySnapshot,
    Outcome,
    OutcomeKind,
    Reason,
    TransferEvent,
    Verdict,
)
from .project_constants import REFUND_ATTEMPTS, REFUND_BACKOFF_S
from .store import TransferStore

log = logging.getLogger("gate.dispatch")


class OutcomeDispatcher:
    """Turns a confirmation decision into exactly one of grant, deny or refund."""

    def __init__(
        self,
        store: TransferStore,
        evaluator: EligibilityEvaluator,
        chat: ChatPlatform,
        ledger: LedgerClient,
        keyring: KeyRing,
        group_id: str,
        invite_expiry: timedelta = timedelta(hours=1),
        refund_on_grant: bool = True,
        refund_attempts: int = REFUND_ATTEMPTS,
        refund_backoff_s: float = REFUND_BACKOFF_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.chat = chat
        self.ledger = ledger
        self.keyring = keyring
        self.group_id = group_id
        self.invite_expiry = invite_expiry
        self.refund_on_grant = refund_on_grant
        self.refund_attempts = refund_attempts
        self.refund_backoff_s = refund_backoff_s
        self._sleep = sleep

    async def dispatch(self, challenge: Challenge, decision: Decision, event: TransferEvent) -> Outcome:
        if decision.verdict is Verdict.NO_MATCH:
            return Outcome(OutcomeKind.NO_MATCH)

        if decision.verdict is Verdict.AMOUNT_MISMATCH:
            return await self._refund_outcome(challenge, event, OutcomeKind.REFUNDED, Reason.AMOUNT_MISMATCH)

        if decision.duplicate_wallet:
            await self.store.release_claim(event.signature)
            return await self._refund_outcome(challenge, event, OutcomeKind.DENIED, Reason.DUPLICATE_WALLET)

        try:
            required = await self.evaluator.resolve_required(challenge.token_mint, challenge.requirement)
            snapshot = await self.evaluator.evaluate(event.source, challenge.token_mint, required)
        except EligibilityLookupError as e:
            log.error("Session %s: eligibility lookup failed: %s", challenge.session_key, e)
            await self.store.release_claim(event.signature)
            return await self._refund_outcome(
                challenge, event, OutcomeKind.REFUNDED, Reason.INSUFFICIENT_HOLDINGS, detail=str(e)
            )

        if not snapshot.eligible:
            await self.store.release_claim(event.signature)
            return await self._refund_outcome(
                challenge, event, OutcomeKind.REFUNDED, Reason.INSUFFICIENT_HOLDINGS, snapshot=snapshot
            )

        return await self._grant(challenge, event, snapshot)

    async def _grant(self, challenge: Challenge, event: TransferEvent, snapshot: EligibilitySnapshot) -> Outcome:
        try:
            link = await self.chat.issue_invite_link(self.group_id, self.invite_expiry, member_limit=1)
        except InviteIssuanceFailed as e:
            # The payment stands; an operator re-issues the invite.
            log.error(
                "Session %s: invite for user %s failed: %s", challenge.session_key, challenge.user_id, e
            )
            return Outcome(OutcomeKind.INVITE_FAILED, snapshot=snapshot, detail=str(e))

        log.info("Session %s: granted user %s (%s)", challenge.session_key, challenge.user_id, event.source)
        refund_sig = None
        if self.refund_on_grant and challenge.asset is DepositAsset.NATIVE:
            try:
                refund_sig = await self.refund(challenge, event)
            except DuplicateRefund:
                log.warning("Session %s: %s was already returned", challenge.session_key, event.signature)
            except RefundFailed as e:
                self._log_refund_failure(challenge, event, e)
        return Outcome(OutcomeKind.GRANTED, invite_link=link, refund_signature=refund_sig, snapshot=snapshot)

    async def _refund_outcome(
        self,
        challenge: Challenge,
        event: TransferEvent,
        kind: OutcomeKind,
        reason: Reason,
        snapshot: Optional[EligibilitySnapshot] = None,
        detail: str = "",
    ) -> Outcome:
        log.info("Session %s: %s (%s), refunding %s", challenge.session_key, kind.value, reason.value, event.source)
        try:
            sig = await self.refund(challenge, event)
        except DuplicateRefund:
            log.warning("Session %s: %s was already returned", challenge.session_key, event.signature)
            return Outcome(OutcomeKind.NO_MATCH, reason=reason, snapshot=snapshot, detail="already refunded")
        except RefundFailed as e:
            self._log_refund_failure(challenge, event, e)
            return Outcome(OutcomeKind.REFUND_FAILED, reason=reason, snapshot=snapshot, detail=str(e))
        return Outcome(kind, reason=reason, refund_signature=sig, snapshot=snapshot, detail=detail)

    def _log_refund_failure(self, challenge: Challenge, event: TransferEvent, error: Exception) -> None:
        log.critical(
            "REFUND FAILED session=%s user=%s payer=%s amount=%s tx=%s: %s (funds remain in custody)",
            challenge.session_key,
            challenge.user_id,
            event.source,
            event.amount,
            event.signature,
            error,
        )

    async def refund(self, challenge: Challenge, event: TransferEvent, claim: bool = True) -> str:
        """Compensating transfer back to the payer; raises RefundFailed after the retry bound.

        With claim set the payment signature is recorded first and a payment
        that was already claimed raises DuplicateRefund without sending.
        A failed refund keeps its claim; the operator settles it by hand.
        """
        if claim and not await self.store.claim_refund(event.signature, challenge.session_key):
            raise DuplicateRefund(event.signature)
        last_error: Optional[Exception] = None
        for attempt in range(1, self.refund_attempts + 1):
            try:
                signer = self.keyring.signer_for(challenge)
                sig = await self.ledger.send_compensating_transfer(signer, event)
            except (TransientLedgerError, OSError, ValueError, KeyError, RuntimeError) as e:
                last_error = e
                log.warning("Refund attempt %d for session %s failed: %s", attempt, challenge.session_key, e)
                if attempt < self.refund_attempts:
                    await self._sleep(self.refund_backoff_s)
                continue
            if challenge.asset is DepositAsset.NATIVE:
                self.keyring.discard(challenge.deposit_address)
            log.info("Session %s: refund issued %s", challenge.session_key, sig)
            return sig
        raise RefundFailed(f"{self.refund_attempts} attempts failed: {last_error}")
