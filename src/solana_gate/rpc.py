from __future__ import annotations

import base64
import itertools
from typing import Any, Dict, List, Optional

import httpx

from .errors import TransientLedgerError


class RpcClient:
    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._ids = itertools.count(1)

    async def close(self) -> None:
        await self.client.aclose()

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        data = await self._post(payload)
        return data.get("result")

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TransientLedgerError(f"{payload['method']}: {e}") from e
        if "error" in data:
            raise TransientLedgerError(f"RPC error: {data['error']}")
        return data

    async def get_signatures_for_address(
        self, address: str, limit: int = 10, commitment: str = "confirmed"
    ) -> List[Dict[str, Any]]:
        """Newest first. Each item has signature, blockTime, err."""
        result = await self._call(
            "getSignaturesForAddress",
            [address, {"limit": limit, "commitment": commitment}],
        )
        return result or []

    async def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        return values[0]

    async def get_transaction(
        self, signature: str, commitment: str = "confirmed"
    ) -> Optional[Dict[str, Any]]:
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_balance(self, address: str, commitment: str = "finalized") -> int:
        result = await self._call("getBalance", [address, {"commitment": commitment}])
        return int(result["value"])

    async def get_latest_blockhash(self, commitment: str = "finalized") -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": commitment}])
        return result["value"]["blockhash"]

    async def get_fee_for_message(
        self, message: bytes, commitment: str = "finalized"
    ) -> int:
        encoded = base64.b64encode(message).decode("ascii")
        result = await self._call("getFeeForMessage", [encoded, {"commitment": commitment}])
        return int((result or {}).get("value") or 0)

    async def send_transaction(self, raw_tx: bytes) -> str:
        encoded = base64.b64encode(raw_tx).decode("ascii")
        result = await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": "finalized"}],
        )
        return str(result)

    async def get_token_accounts_base64(self, owner: str, mint: str) -> List[str]:
        """
        Returns base64 strings for the owner's token accounts of a mint.
        Covers both token programs since the RPC filters by mint.
        """
        result = await self._call(
            "getTokenAccountsByOwner",
            [owner, {"mint": mint}, {"encoding": "base64"}],
        )
        out: List[str] = []
        for item in (result or {}).get("value", []):
            # item['account']['data'] is [base64_str, "base64"]
            out.append(item["account"]["data"][0])
        return out

    async def get_token_supply(self, mint: str) -> int:
        result = await self._call("getTokenSupply", [mint])
        return int(result["value"]["amount"])

    async def get_token_account_owner(self, account: str) -> Optional[str]:
        result = await self._call("getAccountInfo", [account, {"encoding": "jsonParsed"}])
        value = (result or {}).get("value")
        if not value:
            return None
        data = value.get("data")
        if not isinstance(data, dict):
            return None
        return data.get("parsed", {}).get("info", {}).get("owner")
