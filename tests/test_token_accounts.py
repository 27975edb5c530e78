from __future__ import annotations

import base64
import struct

import base58

from solana_gate.token_accounts import parse_owner_and_amount, total_balance_from_b64

from conftest import MINT, OTHER_PAYER, PAYER


def account(owner: str, amount: int) -> bytes:
    return base58.b58decode(MINT) + base58.b58decode(owner) + struct.pack("<Q", amount) + bytes(93)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def test_parse_owner_and_amount():
    assert parse_owner_and_amount(account(PAYER, 123)) == (PAYER, 123)


def test_short_account_data():
    assert parse_owner_and_amount(bytes(71)) is None


def test_total_balance_sums_only_owned_accounts():
    items = [
        b64(account(PAYER, 5)),
        b64(account(PAYER, 7)),
        b64(account(OTHER_PAYER, 100)),
        b64(bytes(10)),
        "%%%not-base64",
    ]
    assert total_balance_from_b64(items, PAYER) == 12


def test_no_accounts():
    assert total_balance_from_b64([], PAYER) == 0
