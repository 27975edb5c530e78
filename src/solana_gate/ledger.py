from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

import nacl.signing
import websockets
from websockets.exceptions import WebSocketException

from .errors import TransientLedgerError
from .keypairs import public_key_b58
from .models import DepositAsset, TransferEvent
from .project_constants import SETTLED_STATUSES
from .rpc import RpcClient
from .token_accounts import total_balance_from_b64
from .transactions import (
    compile_message,
    sign_message,
    system_transfer,
    token_transfer,
)
from .transfers import decode_transfer

log = logging.getLogger("gate.ledger")


@dataclass(frozen=True)
class SignatureStatus:
    confirmation_status: Optional[str]
    err: Any = None

    @property
    def settled(self) -> bool:
        return self.confirmation_status in SETTLED_STATUSES

    @property
    def failed(self) -> bool:
        return self.err is not None


class LedgerClient:
    """Everything the gate needs from the chain, on top of the raw RPC client."""

    def __init__(self, rpc: RpcClient, ws_url: str) -> None:
        self.rpc = rpc
        self.ws_url = ws_url

    async def close(self) -> None:
        await self.rpc.close()

    async def poll_signatures_for(self, address: str) -> List[str]:
        """Oldest first, so the first payment to a fresh address wins."""
        items = await self.rpc.get_signatures_for_address(address)
        return [item["signature"] for item in reversed(items) if item.get("signature")]

    async def recent_signatures(self, address: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Finalized history of an address, oldest first, with blockTime and err."""
        items = await self.rpc.get_signatures_for_address(address, limit=limit, commitment="finalized")
        return [item for item in reversed(items) if item.get("signature")]

    async def balance(self, address: str) -> int:
        return await self.rpc.get_balance(address)

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        raw = await self.rpc.get_signature_status(signature)
        if raw is None:
            return None
        return SignatureStatus(raw.get("confirmationStatus"), raw.get("err"))

    async def await_confirmation(self, signature: str, timeout_s: Optional[float]) -> bool:
        """Blocks on a signatureSubscribe notification.

        Returns False when the transaction landed with an error. Raises
        asyncio.TimeoutError when nothing arrives within timeout_s.
        """
        return await asyncio.wait_for(self._subscribe(signature), timeout_s)

    async def _subscribe(self, signature: str) -> bool:
        request = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "signatureSubscribe",
            "params": [signature, {"commitment": "confirmed"}],
        }
        try:
            async with websockets.connect(self.ws_url) as ws:
                await ws.send(json.dumps(request))
                async for raw in ws:
                    msg = json.loads(raw)
                    if "error" in msg:
                        raise TransientLedgerError(f"signatureSubscribe: {msg['error']}")
                    if msg.get("method") != "signatureNotification":
                        continue
                    value = msg["params"]["result"]["value"]
                    return value.get("err") is None
        except (OSError, WebSocketException) as e:
            raise TransientLedgerError(f"signatureSubscribe: {e}") from e
        raise TransientLedgerError("signatureSubscribe: stream closed")

    async def get_parsed_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        return await self.rpc.get_transaction(signature)

    async def transfer_from(
        self,
        tx: Dict[str, Any],
        signature: str,
        asset: DepositAsset,
        destination: Optional[str] = None,
    ) -> Optional[TransferEvent]:
        event = decode_transfer(tx, signature, asset, destination)
        if event is None or asset is DepositAsset.NATIVE:
            return event
        # Old RPC nodes omit owners from token balance metadata.
        if event.source is None and event.source_account:
            event = replace(event, source=await self.rpc.get_token_account_owner(event.source_account))
        if event.destination is None and event.destination_account:
            event = replace(
                event,
                destination=await self.rpc.get_token_account_owner(event.destination_account),
            )
        return event

    async def token_holdings(self, wallet: str, mint: str) -> int:
        accounts = await self.rpc.get_token_accounts_base64(wallet, mint)
        return total_balance_from_b64(accounts, wallet)

    async def token_supply(self, mint: str) -> int:
        return await self.rpc.get_token_supply(mint)

    async def send_compensating_transfer(
        self, signer: nacl.signing.SigningKey, event: TransferEvent
    ) -> str:
        """Native: the whole deposit balance minus fee. Token: exactly what was received."""
        payer = public_key_b58(signer)
        blockhash = await self.rpc.get_latest_blockhash()

        if event.mint is None:
            balance = await self.rpc.get_balance(payer)
            draft = compile_message(payer, [system_transfer(payer, event.source, balance)], blockhash)
            fee = await self.rpc.get_fee_for_message(draft)
            lamports = balance - fee
            if lamports <= 0:
                raise TransientLedgerError(f"Deposit {payer} holds {balance}, fee {fee}")
            ix = system_transfer(payer, event.source, lamports)
        else:
            ix = token_transfer(
                event.destination_account,
                event.source_account,
                payer,
                int(event.amount),
                program_id=event.program,
            )

        message = compile_message(payer, [ix], blockhash)
        return await self.rpc.send_transaction(sign_message(message, signer))
