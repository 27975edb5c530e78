"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import base58
import pytest

from solana_gate.models import (
    Challenge,
    DepositAsset,
    EligibilitySnapshot,
    Requirement,
    TransferEvent,
    TransferRecord,
)
from solana_gate.project_constants import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from solana_gate.store import MemoryTransferStore

MINT = "BuxH23osRyFFLbWG3czrTsfBQYbxzVZ8f7QV4cjTHN5x"
PAYER = "DW3Z5QVgoMdm47JFmcCR5NXcXifZamJCshQEHCrzBQSP"
OTHER_PAYER = "Dogg6xWSgkF8KbsHkTWD3Et4J9a8VBLZjrASURXGiLe1"
DEPOSIT = "9jY8yUET5iiuF3JzGMcdNLvhb4zonscjiLz9f98QgHNf"
DEPOSIT_2 = "JBztazvrEokEy7XLKrLMHsDuyjfQP8wkMyb4b6g1Trqm"
SIGNATURE = base58.b58encode(bytes(range(64))).decode("ascii")

CREATED_AT = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def ts(dt: datetime) -> int:
    return int(dt.timestamp())


def make_challenge(
    session_key: int = 1,
    user_id: int = 42,
    address: str = DEPOSIT,
    amount: int | None = 1_000_000,
    asset: DepositAsset = DepositAsset.NATIVE,
    created_at: datetime = CREATED_AT,
    source: str | None = None,
) -> Challenge:
    return Challenge(
        session_key=session_key,
        user_id=user_id,
        token_mint=MINT,
        asset=asset,
        deposit_address=address,
        requirement=Requirement.absolute(5),
        expected_amount=amount,
        source=source,
        created_at=created_at,
    )


def make_event(
    amount: int | None = 1_000_000,
    source: str | None = PAYER,
    destination: str | None = DEPOSIT,
    block_time: int | None = None,
    signature: str = "sig-1",
    mint: str | None = None,
) -> TransferEvent:
    return TransferEvent(
        signature=signature,
        source=source,
        destination=destination,
        amount=amount,
        mint=mint,
        block_time=ts(CREATED_AT + timedelta(seconds=30)) if block_time is None else block_time,
        program=TOKEN_PROGRAM_ID if mint else SYSTEM_PROGRAM_ID,
        source_account=source,
        destination_account=destination,
    )


async def issue(store: MemoryTransferStore, challenge: Challenge) -> TransferRecord:
    return await store.insert_pending_challenge(TransferRecord.pending_for(challenge))


@pytest.fixture
def store() -> MemoryTransferStore:
    return MemoryTransferStore()


@pytest.fixture
def chat() -> AsyncMock:
    chat = AsyncMock()
    chat.issue_invite_link.return_value = "https://t.me/+invite"
    return chat


@pytest.fixture
def evaluator() -> AsyncMock:
    evaluator = AsyncMock()
    evaluator.resolve_required.return_value = 5
    evaluator.evaluate.return_value = EligibilitySnapshot(liquid=10, staked=0, required=5)
    return evaluator


@pytest.fixture
def ledger() -> AsyncMock:
    ledger = AsyncMock()
    ledger.send_compensating_transfer.return_value = "refund-sig"
    return ledger


@pytest.fixture
def keyring() -> MagicMock:
    keyring = MagicMock()
    keyring.signer_for.return_value = object()
    return keyring
