from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import List, Optional

import httpx

from .errors import EligibilityLookupError, TransientLedgerError
from .ledger import LedgerClient
from .models import EligibilitySnapshot, LookupFailurePolicy, Requirement

log = logging.getLogger("gate.eligibility")


class StakeClient:
    """Staked balance lookup against an idle-games style staking API."""

    def __init__(
        self,
        url: str,
        api_key: str,
        game: str,
        action: str,
        timeout_s: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.game = game
        self.action = action
        self.client = httpx.AsyncClient(
            timeout=timeout_s,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def staked_amount(self, wallet: str) -> Decimal:
        """Staked balance in token units (not raw); 0 when the wallet never staked."""
        payload = {
            "game": self.game,
            "action": self.action,
            "data": {"walletAddress": wallet},
        }
        try:
            resp = await self.client.post(self.url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise EligibilityLookupError(f"staking API: {e}") from e
        inner = data.get("data") if isinstance(data, dict) else None
        if not inner:
            return Decimal(0)
        try:
            return Decimal(str(inner["amount"]))
        except (KeyError, InvalidOperation) as e:
            raise EligibilityLookupError(f"staking API: bad payload {inner!r}") from e


class EligibilityEvaluator:
    def __init__(
        self,
        ledger: LedgerClient,
        decimals: int,
        stake: Optional[StakeClient] = None,
        policy: LookupFailurePolicy = LookupFailurePolicy.ZERO,
    ) -> None:
        self.ledger = ledger
        self.decimals = decimals
        self.stake = stake
        self.policy = policy

    async def resolve_required(self, token_mint: str, requirement: Requirement) -> int:
        if not requirement.needs_supply:
            return requirement.resolve()
        # No fallback here: a zero threshold would admit everyone.
        try:
            supply = await self.ledger.token_supply(token_mint)
        except TransientLedgerError as e:
            raise EligibilityLookupError(f"token supply for {token_mint}: {e}") from e
        return requirement.resolve(supply)

    def _degrade(self, source: str, wallet: str, error: Exception, degraded: List[str]) -> int:
        if self.policy is LookupFailurePolicy.RAISE:
            raise EligibilityLookupError(f"{source} lookup for {wallet}: {error}") from error
        log.warning("%s lookup failed for %s, counting 0: %s", source, wallet, error)
        degraded.append(source)
        return 0

    async def evaluate(self, wallet: str, token_mint: str, required: int) -> EligibilitySnapshot:
        degraded: List[str] = []

        try:
            liquid = await self.ledger.token_holdings(wallet, token_mint)
        except TransientLedgerError as e:
            liquid = self._degrade("liquid", wallet, e, degraded)

        staked = 0
        if self.stake is not None:
            try:
                units = await self.stake.staked_amount(wallet)
                staked = int(units * (10**self.decimals))
            except EligibilityLookupError as e:
                staked = self._degrade("staked", wallet, e, degraded)

        snapshot = EligibilitySnapshot(
            liquid=liquid, staked=staked, required=required, degraded=tuple(degraded)
        )
        log.info(
            "Eligibility %s: liquid=%d staked=%d required=%d eligible=%s",
            wallet,
            snapshot.liquid,
            snapshot.staked,
            snapshot.required,
            snapshot.eligible,
        )
        return snapshot
