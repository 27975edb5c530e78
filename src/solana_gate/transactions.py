"""Legacy Solana transaction encoding for compensating transfers.

Message: header(3) | compact(n) keys*32 | blockhash(32) | compact(m) instructions
Instruction: program index(u8) | compact(k) account indexes | compact(len) data
Transaction: compact(signatures) | signatures*64 | message
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import base58
import nacl.signing

from .project_constants import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID

SYSTEM_TRANSFER = 2
TOKEN_TRANSFER = 3


@dataclass(frozen=True)
class AccountMeta:
    pubkey: str
    is_signer: bool
    is_writable: bool


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: Tuple[AccountMeta, ...]
    data: bytes


def encode_compact_u16(value: int) -> bytes:
    if value < 0 or value > 0xFFFF:
        raise ValueError(f"compact-u16 out of range: {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def system_transfer(source: str, destination: str, lamports: int) -> Instruction:
    return Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        accounts=(
            AccountMeta(source, is_signer=True, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
        ),
        data=struct.pack("<IQ", SYSTEM_TRANSFER, lamports),
    )


def token_transfer(
    source_account: str,
    destination_account: str,
    owner: str,
    amount: int,
    program_id: str = TOKEN_PROGRAM_ID,
) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(source_account, is_signer=False, is_writable=True),
            AccountMeta(destination_account, is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=True, is_writable=False),
        ),
        data=struct.pack("<BQ", TOKEN_TRANSFER, amount),
    )


def _ordered_keys(fee_payer: str, instructions: Sequence[Instruction]) -> List[AccountMeta]:
    merged: Dict[str, AccountMeta] = {
        fee_payer: AccountMeta(fee_payer, is_signer=True, is_writable=True)
    }
    for ix in instructions:
        for meta in ix.accounts:
            prev = merged.get(meta.pubkey)
            if prev is None:
                merged[meta.pubkey] = meta
            else:
                merged[meta.pubkey] = AccountMeta(
                    meta.pubkey,
                    is_signer=prev.is_signer or meta.is_signer,
                    is_writable=prev.is_writable or meta.is_writable,
                )
        if ix.program_id not in merged:
            merged[ix.program_id] = AccountMeta(ix.program_id, False, False)

    metas = list(merged.values())
    # Stable sort keeps the fee payer first.
    metas.sort(key=lambda m: (not m.is_signer, not m.is_writable))
    return metas


def compile_message(
    fee_payer: str, instructions: Sequence[Instruction], recent_blockhash: str
) -> bytes:
    keys = _ordered_keys(fee_payer, instructions)
    index = {m.pubkey: i for i, m in enumerate(keys)}

    num_signers = sum(1 for m in keys if m.is_signer)
    readonly_signed = sum(1 for m in keys if m.is_signer and not m.is_writable)
    readonly_unsigned = sum(1 for m in keys if not m.is_signer and not m.is_writable)

    out = bytearray(struct.pack("<BBB", num_signers, readonly_signed, readonly_unsigned))
    out += encode_compact_u16(len(keys))
    for m in keys:
        out += base58.b58decode(m.pubkey)
    out += base58.b58decode(recent_blockhash)

    out += encode_compact_u16(len(instructions))
    for ix in instructions:
        out.append(index[ix.program_id])
        out += encode_compact_u16(len(ix.accounts))
        out += bytes(index[m.pubkey] for m in ix.accounts)
        out += encode_compact_u16(len(ix.data))
        out += ix.data
    return bytes(out)


def sign_message(message: bytes, signer: nacl.signing.SigningKey) -> bytes:
    signature = signer.sign(message).signature
    return encode_compact_u16(1) + signature + message
