"""Tests for the ledger client on top of a mocked RPC client."""

from __future__ import annotations

import asyncio
import json
import struct
from unittest.mock import AsyncMock

import nacl.signing
import pytest

from solana_gate import ledger as ledger_module
from solana_gate.errors import TransientLedgerError
from solana_gate.ledger import LedgerClient
from solana_gate.models import DepositAsset
from solana_gate.project_constants import TOKEN_2022_PROGRAM_ID

from conftest import DEPOSIT, MINT, PAYER, make_event

SRC_ACCOUNT = "Dogg6xWSgkF8KbsHkTWD3Et4J9a8VBLZjrASURXGiLe1"
DST_ACCOUNT = "DW3Z5QVgoMdm47JFmcCR5NXcXifZamJCshQEHCrzBQSP"


@pytest.fixture
def rpc() -> AsyncMock:
    rpc = AsyncMock()
    rpc.get_latest_blockhash.return_value = "1" * 32
    rpc.send_transaction.return_value = "refund-sig"
    return rpc


@pytest.fixture
def client(rpc) -> LedgerClient:
    return LedgerClient(rpc, "wss://rpc.example")


def signer() -> nacl.signing.SigningKey:
    return nacl.signing.SigningKey(bytes(range(32)))


class TestReads:
    @pytest.mark.asyncio
    async def test_signatures_oldest_first(self, client, rpc):
        rpc.get_signatures_for_address.return_value = [{"signature": "new"}, {"signature": "old"}]
        assert await client.poll_signatures_for(DEPOSIT) == ["old", "new"]

    @pytest.mark.asyncio
    async def test_signature_status(self, client, rpc):
        rpc.get_signature_status.return_value = {"confirmationStatus": "confirmed", "err": None}
        status = await client.get_signature_status("sig")
        assert status.settled
        assert not status.failed

    @pytest.mark.asyncio
    async def test_recent_signatures_oldest_first(self, client, rpc):
        rpc.get_signatures_for_address.return_value = [
            {"signature": "new", "blockTime": 2, "err": None},
            {"signature": "old", "blockTime": 1, "err": None},
        ]

        items = await client.recent_signatures(DEPOSIT)

        assert [i["signature"] for i in items] == ["old", "new"]
        rpc.get_signatures_for_address.assert_awaited_once_with(DEPOSIT, limit=100, commitment="finalized")

    @pytest.mark.asyncio
    async def test_unknown_signature(self, client, rpc):
        rpc.get_signature_status.return_value = None
        assert await client.get_signature_status("sig") is None

    @pytest.mark.asyncio
    async def test_token_holdings(self, client, rpc):
        rpc.get_token_accounts_base64.return_value = []
        assert await client.token_holdings(PAYER, MINT) == 0
        rpc.get_token_accounts_base64.assert_awaited_once_with(PAYER, MINT)

    @pytest.mark.asyncio
    async def test_transfer_from_looks_up_missing_owner(self, client, rpc):
        tx = {
            "blockTime": 1,
            "meta": {"err": None},
            "transaction": {
                "message": {
                    "accountKeys": [],
                    "instructions": [
                        {
                            "programId": TOKEN_2022_PROGRAM_ID,
                            "parsed": {
                                "type": "transferChecked",
                                "info": {
                                    "source": SRC_ACCOUNT,
                                    "destination": DST_ACCOUNT,
                                    "authority": PAYER,
                                    "mint": MINT,
                                    "tokenAmount": {"amount": "5"},
                                },
                            },
                        }
                    ],
                }
            },
        }
        rpc.get_token_account_owner.return_value = DEPOSIT

        event = await client.transfer_from(tx, "sig", DepositAsset.TOKEN)

        assert event.destination == DEPOSIT
        rpc.get_token_account_owner.assert_awaited_once_with(DST_ACCOUNT)


class TestCompensatingTransfer:
    @pytest.mark.asyncio
    async def test_native_returns_balance_minus_fee(self, client, rpc):
        rpc.get_balance.return_value = 10_000_000
        rpc.get_fee_for_message.return_value = 5000

        sig = await client.send_compensating_transfer(signer(), make_event(amount=10_000_000))

        assert sig == "refund-sig"
        raw = rpc.send_transaction.await_args.args[0]
        assert raw[-12:] == struct.pack("<IQ", 2, 9_995_000)

    @pytest.mark.asyncio
    async def test_native_balance_below_fee(self, client, rpc):
        rpc.get_balance.return_value = 4000
        rpc.get_fee_for_message.return_value = 5000

        with pytest.raises(TransientLedgerError):
            await client.send_compensating_transfer(signer(), make_event())
        rpc.send_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_token_returns_exact_amount(self, client, rpc):
        event = make_event(amount=1_000_001, mint=MINT)

        await client.send_compensating_transfer(signer(), event)

        raw = rpc.send_transaction.await_args.args[0]
        assert raw[-9:] == struct.pack("<BQ", 3, 1_000_001)
        rpc.get_balance.assert_not_awaited()


class FakeSocket:
    def __init__(self, messages):
        self.messages = [json.dumps(m) for m in messages]
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, data):
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for message in self.messages:
            yield message


class TestConfirmationSubscription:
    @pytest.mark.asyncio
    async def test_success_notification(self, client, monkeypatch):
        socket = FakeSocket(
            [
                {"jsonrpc": "2.0", "result": 7, "id": 1},
                {"method": "signatureNotification", "params": {"result": {"value": {"err": None}}}},
            ]
        )
        monkeypatch.setattr(ledger_module.websockets, "connect", lambda url: socket)

        assert await client.await_confirmation("sig", 5) is True
        assert socket.sent[0]["method"] == "signatureSubscribe"

    @pytest.mark.asyncio
    async def test_error_notification(self, client, monkeypatch):
        socket = FakeSocket(
            [{"method": "signatureNotification", "params": {"result": {"value": {"err": {"x": 1}}}}}]
        )
        monkeypatch.setattr(ledger_module.websockets, "connect", lambda url: socket)

        assert await client.await_confirmation("sig", 5) is False

    @pytest.mark.asyncio
    async def test_closed_stream(self, client, monkeypatch):
        monkeypatch.setattr(ledger_module.websockets, "connect", lambda url: FakeSocket([]))

        with pytest.raises(TransientLedgerError):
            await client.await_confirmation("sig", 5)

    @pytest.mark.asyncio
    async def test_timeout(self, client, monkeypatch):
        class Hanging(FakeSocket):
            async def _iter(self):
                await asyncio.sleep(10)
                yield "{}"

        monkeypatch.setattr(ledger_module.websockets, "connect", lambda url: Hanging([]))

        with pytest.raises(asyncio.TimeoutError):
            await client.await_confirmation("sig", 0.01)
