"""Tests for legacy transaction encoding."""

from __future__ import annotations

import struct

import base58
import nacl.signing
import pytest

from solana_gate.keypairs import public_key_b58
from solana_gate.project_constants import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID
from solana_gate.transactions import (
    compile_message,
    encode_compact_u16,
    sign_message,
    system_transfer,
    token_transfer,
)

from conftest import DEPOSIT, PAYER

BLOCKHASH = "1" * 32


@pytest.mark.parametrize(
    "value, encoded",
    [
        (0, b"\x00"),
        (127, b"\x7f"),
        (128, b"\x80\x01"),
        (16383, b"\xff\x7f"),
        (16384, b"\x80\x80\x01"),
    ],
)
def test_compact_u16(value, encoded):
    assert encode_compact_u16(value) == encoded


def test_compact_u16_range():
    with pytest.raises(ValueError):
        encode_compact_u16(1 << 16)


class TestMessage:
    def test_system_transfer_layout(self):
        message = compile_message(PAYER, [system_transfer(PAYER, DEPOSIT, 5000)], BLOCKHASH)

        assert message[:3] == bytes([1, 0, 1])
        assert message[3] == 3
        keys = [base58.b58encode(message[4 + 32 * i : 36 + 32 * i]).decode() for i in range(3)]
        assert keys == [PAYER, DEPOSIT, SYSTEM_PROGRAM_ID]
        assert message[100:132] == bytes(32)
        # One instruction: program 2, accounts [0, 1], 12 bytes of data.
        assert message[132:137] == bytes([1, 2, 2, 0, 1])
        assert message[137] == 12
        assert message[138:] == struct.pack("<IQ", 2, 5000)

    def test_token_transfer_puts_signer_first(self):
        owner = PAYER
        ix = token_transfer(DEPOSIT, "Dogg6xWSgkF8KbsHkTWD3Et4J9a8VBLZjrASURXGiLe1", owner, 7)
        message = compile_message(owner, [ix], BLOCKHASH)

        # Payer signs; the two token accounts are writable; the program is read-only.
        assert message[:3] == bytes([1, 0, 1])
        assert message[3] == 4
        assert base58.b58encode(message[4:36]).decode() == owner
        assert message[-9:] == struct.pack("<BQ", 3, 7)
        program_index = message[-9 - 1 - 1 - 3 - 1]
        assert base58.b58encode(message[4 + 32 * program_index : 36 + 32 * program_index]).decode() == TOKEN_PROGRAM_ID


def test_signed_transaction_verifies():
    key = nacl.signing.SigningKey(bytes(range(32)))
    payer = public_key_b58(key)
    message = compile_message(payer, [system_transfer(payer, DEPOSIT, 1)], BLOCKHASH)

    raw = sign_message(message, key)

    assert raw[0] == 1
    assert raw[65:] == message
    key.verify_key.verify(message, raw[1:65])
