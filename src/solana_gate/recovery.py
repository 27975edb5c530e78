from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import asyncpg

from .dispatcher import OutcomeDispatcher
from .errors import RefundFailed, TransientLedgerError
from .keypairs import KeyRing, StoredKey
from .ledger import LedgerClient
from .models import Challenge, DepositAsset, Requirement, TransferEvent
from .session import SessionRegistry
from .store import TransferStore

log = logging.getLogger("gate.recovery")


@dataclass
class RecoveryReport:
    # Deposit addresses for native keys, payment signatures for the treasury.
    refunded: List[str] = field(default_factory=list)
    discarded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class DepositRecovery:
    """Returns payments that no verification is waiting for any more.

    A deposit key stays on disk until its balance has gone back, so a key
    older than the verification window that still holds lamports belongs to
    a payment that arrived late or whose refund never went out. On the
    treasury side every incoming token transfer that was neither granted
    against nor refunded is sent back to its payer.
    """

    def __init__(
        self,
        store: TransferStore,
        ledger: LedgerClient,
        keyring: KeyRing,
        dispatcher: OutcomeDispatcher,
        sessions: SessionRegistry,
        token_mint: str,
        treasury_wallet: str = "",
        min_age_s: float = 1800.0,
        lookback_s: float = 86400.0,
        refund_granted: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.keyring = keyring
        self.dispatcher = dispatcher
        self.sessions = sessions
        self.token_mint = token_mint
        self.treasury_wallet = treasury_wallet
        self.min_age_s = min_age_s
        self.lookback_s = lookback_s
        self.refund_granted = refund_granted
        self._clock = clock

    async def run(self) -> RecoveryReport:
        report = RecoveryReport()
        await self.recover_deposit_keys(report)
        if self.treasury_wallet:
            await self.recover_treasury(report)
        log.info(
            "Recovery done: refunded=%d discarded=%d failed=%d",
            len(report.refunded),
            len(report.discarded),
            len(report.failed),
        )
        return report

    # -- native deposit addresses ------------------------------------------

    async def recover_deposit_keys(self, report: RecoveryReport) -> None:
        try:
            keys = self.keyring.stored()
        except (OSError, ValueError) as e:
            log.error("Recovery: cannot list deposit keys: %s", e)
            return
        now = self._clock()
        for key in keys:
            if now - key.modified < self.min_age_s:
                continue
            if key.session_key is not None and self.sessions.is_open(key.session_key):
                continue
            try:
                await self._recover_key(key, report)
            except RefundFailed as e:
                log.critical(
                    "REFUND FAILED deposit=%s session=%s: %s (funds remain in custody)",
                    key.address,
                    key.session_key,
                    e,
                )
                report.failed.append(key.address)
            except (TransientLedgerError, asyncpg.PostgresError, OSError, ValueError, KeyError) as e:
                log.warning("Recovery: deposit %s failed: %s", key.address, e)
                report.failed.append(key.address)

    async def _recover_key(self, key: StoredKey, report: RecoveryReport) -> None:
        balance = await self.ledger.balance(key.address)
        if balance == 0:
            self.keyring.discard(key.address)
            await self.store.delete_pending_at(key.address)
            log.info("Recovery: deposit %s is empty, key discarded", key.address)
            report.discarded.append(key.address)
            return

        event = await self._incoming_native(key.address)
        if event is None:
            log.error("Recovery: deposit %s holds %d but no payer was found", key.address, balance)
            report.failed.append(key.address)
            return
        if not self.refund_granted and await self.store.is_granted(event.signature):
            return

        challenge = Challenge(
            session_key=key.session_key or 0,
            user_id=0,
            token_mint=self.token_mint,
            asset=DepositAsset.NATIVE,
            deposit_address=key.address,
            requirement=Requirement.absolute(0),
            created_at=datetime.fromtimestamp(key.modified, tz=timezone.utc),
        )
        # Drains the deposit, so the next pass finds it empty.
        sig = await self.dispatcher.refund(challenge, event, claim=False)
        await self.store.delete_pending_at(key.address)
        log.info("Recovery: returned %d lamports at %s to %s (%s)", balance, key.address, event.source, sig)
        report.refunded.append(key.address)

    async def _incoming_native(self, address: str) -> Optional[TransferEvent]:
        for item in await self.ledger.recent_signatures(address):
            if item.get("err") is not None:
                continue
            tx = await self.ledger.get_parsed_transaction(item["signature"])
            if tx is None:
                continue
            event = await self.ledger.transfer_from(tx, item["signature"], DepositAsset.NATIVE, address)
            if event is not None and event.destination == address and event.source:
                return event
        return None

    # -- treasury -----------------------------------------------------------

    async def recover_treasury(self, report: RecoveryReport) -> None:
        try:
            history = await self.ledger.recent_signatures(self.treasury_wallet)
        except TransientLedgerError as e:
            log.error("Recovery: treasury history unavailable: %s", e)
            return
        now = self._clock()
        for item in history:
            if not self._in_window(item, now):
                continue
            signature = item["signature"]
            try:
                await self._recover_payment(signature, item["blockTime"], report)
            except RefundFailed as e:
                log.critical("REFUND FAILED tx=%s: %s (funds remain in custody)", signature, e)
                report.failed.append(signature)
            except (TransientLedgerError, asyncpg.PostgresError, OSError, ValueError, KeyError) as e:
                log.warning("Recovery: payment %s failed: %s", signature, e)
                report.failed.append(signature)

    def _in_window(self, item: Dict[str, Any], now: float) -> bool:
        block_time = item.get("blockTime")
        if item.get("err") is not None or block_time is None:
            return False
        age = now - block_time
        return self.min_age_s <= age <= self.lookback_s

    async def _recover_payment(self, signature: str, block_time: int, report: RecoveryReport) -> None:
        if await self.store.signature_settled(signature):
            return
        tx = await self.ledger.get_parsed_transaction(signature)
        if tx is None:
            return
        event = await self.ledger.transfer_from(tx, signature, DepositAsset.TOKEN, self.treasury_wallet)
        if (
            event is None
            or not event.is_complete
            or event.destination != self.treasury_wallet
            or event.mint != self.token_mint
        ):
            # Outgoing refunds and unrelated traffic.
            return
        if not await self.store.claim_refund(signature, None):
            return

        challenge = Challenge(
            session_key=0,
            user_id=0,
            token_mint=self.token_mint,
            asset=DepositAsset.TOKEN,
            deposit_address=self.treasury_wallet,
            requirement=Requirement.absolute(0),
            created_at=datetime.fromtimestamp(block_time, tz=timezone.utc),
        )
        sig = await self.dispatcher.refund(challenge, event, claim=False)
        log.info("Recovery: returned %d of %s to %s (%s)", event.amount, signature, event.source, sig)
        report.refunded.append(signature)
