"""Tests for the eligibility evaluator and staking lookup."""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from solana_gate.eligibility import EligibilityEvaluator, StakeClient
from solana_gate.errors import EligibilityLookupError, TransientLedgerError
from solana_gate.models import EligibilitySnapshot, LookupFailurePolicy, Requirement

from conftest import MINT, PAYER


def stake_returning(amount) -> AsyncMock:
    stake = AsyncMock()
    stake.staked_amount.return_value = Decimal(amount)
    return stake


class TestSnapshot:
    def test_combined_and_shortfall(self):
        snap = EligibilitySnapshot(liquid=3, staked=4, required=10)
        assert snap.combined == 7
        assert snap.shortfall == 3
        assert snap.eligible is False

    def test_exactly_at_threshold_is_eligible(self):
        assert EligibilitySnapshot(liquid=5, staked=0, required=5).eligible is True


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_liquid_plus_staked(self, ledger):
        ledger.token_holdings.return_value = 6
        evaluator = EligibilityEvaluator(ledger, decimals=0, stake=stake_returning(4))

        snap = await evaluator.evaluate(PAYER, MINT, required=5)

        assert (snap.liquid, snap.staked, snap.combined) == (6, 4, 10)
        assert snap.eligible is True
        ledger.token_holdings.assert_awaited_once_with(PAYER, MINT)

    @pytest.mark.asyncio
    async def test_staked_units_scaled_to_raw(self, ledger):
        ledger.token_holdings.return_value = 0
        evaluator = EligibilityEvaluator(ledger, decimals=6, stake=stake_returning("1.5"))

        snap = await evaluator.evaluate(PAYER, MINT, required=1_500_000)

        assert snap.staked == 1_500_000
        assert snap.eligible is True

    @pytest.mark.asyncio
    async def test_stake_outage_counts_zero_and_is_reported(self, ledger):
        ledger.token_holdings.return_value = 7
        stake = AsyncMock()
        stake.staked_amount.side_effect = EligibilityLookupError("503")
        evaluator = EligibilityEvaluator(ledger, decimals=0, stake=stake)

        snap = await evaluator.evaluate(PAYER, MINT, required=5)

        assert snap.staked == 0
        assert snap.degraded == ("staked",)
        assert snap.eligible is True

    @pytest.mark.asyncio
    async def test_liquid_outage_never_makes_eligible(self, ledger):
        ledger.token_holdings.side_effect = TransientLedgerError("timeout")
        evaluator = EligibilityEvaluator(ledger, decimals=0, stake=stake_returning(1))

        snap = await evaluator.evaluate(PAYER, MINT, required=5)

        assert snap.liquid == 0
        assert snap.degraded == ("liquid",)
        assert snap.eligible is False

    @pytest.mark.asyncio
    async def test_raise_policy_propagates(self, ledger):
        ledger.token_holdings.return_value = 7
        stake = AsyncMock()
        stake.staked_amount.side_effect = EligibilityLookupError("503")
        evaluator = EligibilityEvaluator(ledger, decimals=0, stake=stake, policy=LookupFailurePolicy.RAISE)

        with pytest.raises(EligibilityLookupError):
            await evaluator.evaluate(PAYER, MINT, required=5)

    @pytest.mark.asyncio
    async def test_without_stake_client(self, ledger):
        ledger.token_holdings.return_value = 2
        snap = await EligibilityEvaluator(ledger, decimals=0).evaluate(PAYER, MINT, required=5)
        assert snap.staked == 0
        assert snap.shortfall == 3


class TestRequirement:
    @pytest.mark.asyncio
    async def test_absolute(self, ledger):
        evaluator = EligibilityEvaluator(ledger, decimals=6)
        assert await evaluator.resolve_required(MINT, Requirement.absolute(5_000_000)) == 5_000_000
        ledger.token_supply.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_percent_of_supply(self, ledger):
        ledger.token_supply.return_value = 1_000_000_000
        evaluator = EligibilityEvaluator(ledger, decimals=6)

        required = await evaluator.resolve_required(MINT, Requirement.percent_of_supply(Decimal("0.5")))

        assert required == 5_000_000

    @pytest.mark.asyncio
    async def test_supply_outage_is_an_error(self, ledger):
        ledger.token_supply.side_effect = TransientLedgerError("down")
        evaluator = EligibilityEvaluator(ledger, decimals=6)

        with pytest.raises(EligibilityLookupError):
            await evaluator.resolve_required(MINT, Requirement.percent_of_supply(Decimal(1)))


def stake_client(handler) -> StakeClient:
    return StakeClient(
        "https://stake.example/api",
        "key",
        game="ponke-game",
        action="get-total-staked",
        transport=httpx.MockTransport(handler),
    )


class TestStakeClient:
    @pytest.mark.asyncio
    async def test_reads_amount(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json={"data": {"amount": "12.5"}})

        client = stake_client(handler)
        try:
            assert await client.staked_amount(PAYER) == Decimal("12.5")
        finally:
            await client.close()
        assert seen["body"]["data"]["walletAddress"] == PAYER
        assert seen["body"]["game"] == "ponke-game"
        assert seen["auth"] == "Bearer key"

    @pytest.mark.asyncio
    async def test_no_stake_is_zero(self):
        client = stake_client(lambda request: httpx.Response(200, json={"data": None}))
        try:
            assert await client.staked_amount(PAYER) == 0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_http_error_raises_lookup_error(self):
        client = stake_client(lambda request: httpx.Response(503))
        try:
            with pytest.raises(EligibilityLookupError):
                await client.staked_amount(PAYER)
        finally:
            await client.close()
