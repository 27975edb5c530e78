from __future__ import annotations

import base64
import binascii
import logging
import struct
from typing import Iterable, Tuple

import base58

from .project_constants import TOKEN_ACCOUNT_MIN_LEN

log = logging.getLogger("gate.accounts")


def parse_owner_and_amount(account_data: bytes) -> Tuple[str, int] | None:
    """
    Standard token account layout (works for classic; Token-2022 keeps these offsets too).
    Mint(0-32) | Owner(32-64) | Amount(64-72)
    """
    if len(account_data) < TOKEN_ACCOUNT_MIN_LEN:
        return None

    owner_bytes = account_data[32:64]
    amount_bytes = account_data[64:72]
    owner = base58.b58encode(owner_bytes).decode("ascii")
    amount = struct.unpack("<Q", amount_bytes)[0]
    return owner, amount


def total_balance_from_b64(b64_items: Iterable[str], owner: str) -> int:
    """Sum of raw balances across the owner's token accounts."""
    total = 0
    for b64_str in b64_items:
        try:
            raw = base64.b64decode(b64_str)
        except (binascii.Error, ValueError):
            log.warning("Skipping undecodable token account for %s", owner)
            continue

        parsed = parse_owner_and_amount(raw)
        if not parsed:
            continue

        account_owner, amount = parsed
        if account_owner != owner:
            continue
        total += int(amount)

    return total
