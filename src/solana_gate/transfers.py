"""Decoding of jsonParsed transactions into transfer events.

A transaction may carry several transfers; the one paying the deposit
address is the candidate. Token transfers name token accounts, not
wallets, so owners and the mint are resolved from the transaction's token
balance metadata when present.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional

from .models import DepositAsset, TransferEvent
from .project_constants import SYSTEM_PROGRAM_ID, TOKEN_PROGRAMS

TOKEN_TRANSFER_TYPES = ("transfer", "transferChecked")


def _account_keys(tx: Dict[str, Any]) -> List[str]:
    keys = tx.get("transaction", {}).get("message", {}).get("accountKeys", [])
    out: List[str] = []
    for key in keys:
        out.append(key["pubkey"] if isinstance(key, dict) else key)
    return out


def _instructions(tx: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    yield from tx.get("transaction", {}).get("message", {}).get("instructions", [])
    # Transfers routed through another program show up as inner instructions.
    for inner in (tx.get("meta") or {}).get("innerInstructions") or []:
        yield from inner.get("instructions", [])


def token_balance_index(tx: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Maps token account address -> {"mint", "owner"} from balance metadata."""
    keys = _account_keys(tx)
    meta = tx.get("meta") or {}
    out: Dict[str, Dict[str, Any]] = {}
    for entry in (meta.get("preTokenBalances") or []) + (meta.get("postTokenBalances") or []):
        idx = entry.get("accountIndex")
        if idx is None or idx >= len(keys):
            continue
        out[keys[idx]] = {"mint": entry.get("mint"), "owner": entry.get("owner")}
    return out


def _native_transfers(tx: Dict[str, Any], signature: str) -> Iterator[TransferEvent]:
    for ix in _instructions(tx):
        if ix.get("programId") != SYSTEM_PROGRAM_ID:
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
            continue
        info = parsed.get("info", {})
        lamports = info.get("lamports")
        yield TransferEvent(
            signature=signature,
            source=info.get("source"),
            destination=info.get("destination"),
            amount=int(lamports) if lamports is not None else None,
            mint=None,
            block_time=tx.get("blockTime"),
            program=SYSTEM_PROGRAM_ID,
            source_account=info.get("source"),
            destination_account=info.get("destination"),
        )


def _token_amount(info: Dict[str, Any]) -> Optional[int]:
    if "tokenAmount" in info:
        raw = info["tokenAmount"].get("amount")
    else:
        raw = info.get("amount")
    return int(raw) if raw is not None else None


def _token_transfers(tx: Dict[str, Any], signature: str) -> Iterator[TransferEvent]:
    balances = token_balance_index(tx)
    for ix in _instructions(tx):
        program = ix.get("programId")
        if program not in TOKEN_PROGRAMS:
            continue
        parsed = ix.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") not in TOKEN_TRANSFER_TYPES:
            continue
        info = parsed.get("info", {})
        src_acct = info.get("source")
        dst_acct = info.get("destination")
        src_meta = balances.get(src_acct, {})
        dst_meta = balances.get(dst_acct, {})
        yield TransferEvent(
            signature=signature,
            source=src_meta.get("owner") or info.get("authority"),
            destination=dst_meta.get("owner"),
            amount=_token_amount(info),
            mint=info.get("mint") or dst_meta.get("mint") or src_meta.get("mint"),
            block_time=tx.get("blockTime"),
            program=program,
            source_account=src_acct,
            destination_account=dst_acct,
        )


def _select(candidates: List[TransferEvent], destination: Optional[str]) -> Optional[TransferEvent]:
    if not candidates:
        return None
    if destination is None:
        return candidates[0]
    for event in candidates:
        if destination in (event.destination, event.destination_account):
            return event
    # An owner missing from the metadata may still turn out to be ours.
    for event in candidates:
        if event.destination is None:
            return event
    return candidates[0]


def decode_transfer(
    tx: Dict[str, Any],
    signature: str,
    asset: DepositAsset,
    destination: Optional[str] = None,
) -> Optional[TransferEvent]:
    """Returns None when no instruction of the expected program is present.

    With a destination, the instruction paying that address (or a token
    account it owns) is chosen over fees, tips and other legs of the same
    transaction. Without one, or when nothing pays it, the first
    instruction of the family is returned.
    """
    if (tx.get("meta") or {}).get("err") is not None:
        return None
    if asset is DepositAsset.NATIVE:
        candidates = list(_native_transfers(tx, signature))
    else:
        candidates = list(_token_transfers(tx, signature))
    return _select(candidates, destination)
