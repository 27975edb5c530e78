from __future__ import annotations

import asyncio
import logging
import re
import secrets
import time
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional, TypeVar

import base58

from .chat import ChatPlatform, render_outcome
from .config import Settings
from .confirmation import ConfirmationProtocol
from .dispatcher import OutcomeDispatcher
from .errors import ChallengeCollision, InvalidSignatureFormat, VerificationTimedOut
from .keypairs import KeyRing, validate_address
from .models import (
    Challenge,
    DepositAsset,
    KeyingStrategy,
    Outcome,
    OutcomeKind,
    Requirement,
    TransferRecord,
)
from .project_constants import LAMPORTS_PER_SOL
from .session import SessionRegistry
from .store import TransferStore
from .watcher import DepositWatcher

log = logging.getLogger("gate")

T = TypeVar("T")

B58 = "1-9A-HJ-NP-Za-km-z"
TX_URL_RE = re.compile(rf"/tx/([{B58}]{{64,88}})")
SIGNATURE_RE = re.compile(rf"^[{B58}]{{64,88}}$")

# Unique-amount jitter for challenges that share the treasury address.
AMOUNT_JITTER = 1_000_000
COLLISION_RETRIES = 5

MANUAL_INVITE_EXPIRY = timedelta(hours=12)


def parse_signature(raw_text: str) -> str:
    """Transaction signature from a bare signature or an explorer URL."""
    text = (raw_text or "").strip()
    match = TX_URL_RE.search(text)
    candidate = match.group(1) if match else (text.split()[0] if text else "")
    if not SIGNATURE_RE.match(candidate):
        raise InvalidSignatureFormat(f"Not a transaction signature: {raw_text!r}")
    try:
        if len(base58.b58decode(candidate)) != 64:
            raise InvalidSignatureFormat(f"Not a transaction signature: {raw_text!r}")
    except ValueError as e:
        raise InvalidSignatureFormat(f"Not a transaction signature: {raw_text!r}") from e
    return candidate


def parse_wallet(raw_text: str) -> str:
    text = (raw_text or "").strip()
    if not validate_address(text):
        raise ValueError(f"Not a wallet address: {raw_text!r}")
    return text


def format_units(raw: int, decimals: int) -> str:
    return f"{Decimal(raw) / (Decimal(10) ** decimals):f}"


class Gatekeeper:
    """Challenge lifecycle: open, watch, confirm, dispatch, release."""

    def __init__(
        self,
        settings: Settings,
        store: TransferStore,
        sessions: SessionRegistry,
        watcher: DepositWatcher,
        protocol: ConfirmationProtocol,
        dispatcher: OutcomeDispatcher,
        keyring: KeyRing,
        chat: ChatPlatform,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.watcher = watcher
        self.protocol = protocol
        self.dispatcher = dispatcher
        self.keyring = keyring
        self.chat = chat

    # -- challenge creation -------------------------------------------------

    async def _issue(self, session_key: int, user_id: int, requirement: Requirement, source: Optional[str]) -> Challenge:
        s = self.settings
        if s.keying is KeyingStrategy.SOURCE and not source:
            raise ValueError("SOURCE keying needs the payer wallet up front")

        if s.deposit_flow == "address":
            address = self.keyring.generate(session_key)
            challenge = Challenge(
                session_key=session_key,
                user_id=user_id,
                token_mint=s.token_mint,
                asset=DepositAsset.NATIVE,
                deposit_address=address,
                requirement=requirement,
                expected_amount=s.deposit_lamports,
                source=source,
            )
            try:
                record = await self.store.insert_pending_challenge(TransferRecord.pending_for(challenge))
            except BaseException:
                self.keyring.discard(address)
                raise
            return replace(challenge, created_at=record.created_at)

        if not s.treasury_wallet:
            raise RuntimeError("Missing environment variable: TREASURY_WALLET")
        for _ in range(COLLISION_RETRIES):
            amount = None
            if s.keying is KeyingStrategy.SESSION:
                amount = s.signature_deposit + secrets.randbelow(AMOUNT_JITTER)
            challenge = Challenge(
                session_key=session_key,
                user_id=user_id,
                token_mint=s.token_mint,
                asset=DepositAsset.TOKEN,
                deposit_address=s.treasury_wallet,
                requirement=requirement,
                expected_amount=amount,
                source=source,
            )
            try:
                record = await self.store.insert_pending_challenge(TransferRecord.pending_for(challenge))
            except ChallengeCollision:
                log.info("Session %s: amount %s collided, drawing another", session_key, amount)
                continue
            return replace(challenge, created_at=record.created_at)
        raise ChallengeCollision(f"No free deposit amount after {COLLISION_RETRIES} draws")

    async def open_challenge(
        self,
        session_key: int,
        user_id: int,
        requirement: Optional[Requirement] = None,
        source: Optional[str] = None,
    ) -> Challenge:
        """Opens the session and durably records the claim. Raises AlreadyOpen."""
        self.sessions.open(session_key)
        try:
            return await self._issue(session_key, user_id, requirement or self.settings.requirement, source)
        except BaseException:
            self.sessions.close(session_key)
            raise

    def instructions(self, challenge: Challenge) -> str:
        if challenge.asset is DepositAsset.NATIVE:
            sol = Decimal(challenge.expected_amount) / LAMPORTS_PER_SOL
            return (
                f"Please send {sol:f} *SOL* to `{challenge.deposit_address}` "
                "(This will be refunded.)"
            )
        symbol = self.settings.token_symbol or "tokens"
        if challenge.expected_amount is None:
            amount = "any amount of"
        else:
            amount = f"exactly {format_units(challenge.expected_amount, self.settings.token_decimals)}"
        return (
            f"Please send {amount} *{symbol}* to `{challenge.deposit_address}` "
            "then reply with the transaction signature or explorer link. "
            "(This will be refunded.)"
        )

    # -- replies ------------------------------------------------------------

    def submit_signature(self, session_key: int, user_id: int, raw_text: str) -> bool:
        """Raises InvalidSignatureFormat; False when no verification is waiting on this user."""
        signature = parse_signature(raw_text)
        return self.sessions.deliver(session_key, user_id, signature)

    def submit_reply(self, session_key: int, user_id: int, raw_text: str) -> bool:
        return self.sessions.deliver(session_key, user_id, raw_text)

    async def _await_reply(self, session_key: int, user_id: int, parse: Callable[[str], T], retry_text: str) -> T:
        timeout = self.settings.challenge_timeout_s
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                text = await self.sessions.wait_for_reply(session_key, user_id, remaining)
            except asyncio.TimeoutError:
                raise VerificationTimedOut(f"No reply from {user_id} within {timeout}s")
            try:
                return parse(text)
            except ValueError:
                await self.chat.notify(session_key, retry_text)

    # -- resolution ---------------------------------------------------------

    async def _resolve(self, challenge: Challenge) -> Outcome:
        timeout = self.settings.challenge_timeout_s
        try:
            if challenge.asset is DepositAsset.TOKEN:
                if not challenge.expected_signature:
                    signature = await self._await_reply(
                        challenge.session_key,
                        challenge.user_id,
                        parse_signature,
                        "That does not look like a transaction signature, please try again.",
                    )
                    challenge = challenge.with_signature(signature)
                event = await self.watcher.watch_signature(challenge, timeout)
            else:
                event = await self.watcher.watch_address(challenge, timeout)
        except VerificationTimedOut as e:
            # The pending claim stays so a late payment can still be matched.
            log.warning("Session %s: %s", challenge.session_key, e)
            return Outcome(OutcomeKind.TIMED_OUT, detail=str(e))

        if event is None:
            await self.store.delete_pending_for(challenge.session_key)
            return Outcome(OutcomeKind.NO_TRANSFER)

        decision = await self.protocol.resolve(challenge, event)
        return await self.dispatcher.dispatch(challenge, decision, event)

    async def run_challenge(self, challenge: Challenge) -> Outcome:
        """Watches to a terminal outcome, notifies the user and releases the session."""
        try:
            outcome = await self._resolve(challenge)
            await self.chat.notify(
                challenge.session_key,
                render_outcome(
                    outcome,
                    symbol=self.settings.token_symbol,
                    chat_name=self.settings.chat_name,
                    expiry_hours=self.settings.invite_expiry_hours,
                ),
            )
            return outcome
        finally:
            self.sessions.close(challenge.session_key)

    async def begin(self, session_key: int, user_id: int) -> Outcome:
        """Full verification as driven from the chat. Raises AlreadyOpen."""
        source = None
        if self.settings.keying is KeyingStrategy.SOURCE:
            try:
                async with self.sessions.hold(session_key):
                    await self.chat.notify(session_key, "Reply with the wallet address that holds your tokens.")
                    source = await self._await_reply(
                        session_key, user_id, parse_wallet, "That is not a valid wallet address, please try again."
                    )
            except VerificationTimedOut as e:
                log.info("Session %s: %s", session_key, e)
                await self.chat.notify(session_key, render_outcome(Outcome(OutcomeKind.TIMED_OUT)))
                return Outcome(OutcomeKind.TIMED_OUT, detail=str(e))

        challenge = await self.open_challenge(session_key, user_id, source=source)
        await self.chat.notify(session_key, self.instructions(challenge))
        return await self.run_challenge(challenge)

    async def grant_manually(self, operator_id: int, wallet: str, user_id: int) -> str:
        """Operator override: binds a wallet to a user without a deposit."""
        if operator_id not in self.settings.exempt_user_ids:
            raise PermissionError(f"{operator_id} may not authorize users")
        if not validate_address(wallet):
            raise ValueError(f"Not a wallet address: {wallet!r}")
        await self.store.insert_manual_grant(user_id, wallet, self.settings.token_mint)
        log.info("Operator %s manually granted %s (%s)", operator_id, user_id, wallet)
        return await self.chat.issue_invite_link(self.settings.chat_id, MANUAL_INVITE_EXPIRY, member_limit=1)
