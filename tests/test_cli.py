from __future__ import annotations

import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from solana_gate import cli
from solana_gate.app import build_services
from solana_gate.config import Settings
from solana_gate.models import EligibilitySnapshot, Requirement
from solana_gate.recovery import RecoveryReport
from solana_gate.store import MemoryTransferStore

from conftest import MINT, PAYER


@pytest.fixture
def settings() -> Settings:
    return Settings(
        rpc_url="https://rpc.example",
        ws_url="wss://rpc.example",
        token_mint=MINT,
        token_decimals=6,
        requirement=Requirement.absolute(5_000_000),
    )


def test_parser():
    args = cli.build_parser().parse_args(["--timeout", "5", "check", "--wallet", PAYER])
    assert args.func is cli.cmd_check
    assert args.wallet == PAYER
    assert args.timeout == 5.0


def test_subcommand_required():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


@pytest.mark.asyncio
async def test_check_prints_snapshot(settings, monkeypatch, capsys):
    services = MagicMock()
    services.close = AsyncMock()
    services.evaluator.resolve_required = AsyncMock(return_value=5_000_000)
    services.evaluator.evaluate = AsyncMock(
        return_value=EligibilitySnapshot(liquid=4_000_000, staked=0, required=5_000_000, degraded=("staked",))
    )
    monkeypatch.setattr(cli, "build_services", lambda s, timeout_s: services)

    code = await cli._check(settings, PAYER, 5.0)

    assert code == 1
    out = json.loads(capsys.readouterr().out)
    assert out["liquid"] == "4"
    assert out["shortfall"] == "1"
    assert out["eligible"] is False
    assert out["degraded"] == ["staked"]
    services.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_build_services_wiring(settings):
    services = build_services(settings)
    try:
        assert isinstance(services.store, MemoryTransferStore)
        assert services.gate is None
        assert services.stake is None
    finally:
        await services.close()

    services = build_services(settings, chat=AsyncMock())
    try:
        assert services.gate is not None
        assert services.reaper is not None
        assert services.recovery.min_age_s == 1800.0
        assert services.recovery.treasury_wallet == ""
    finally:
        await services.close()


def test_recover_subcommand():
    args = cli.build_parser().parse_args(["recover"])
    assert args.func is cli.cmd_recover


@pytest.mark.asyncio
async def test_recover_reports_failures(settings, monkeypatch, capsys):
    bot = MagicMock()
    bot.__aenter__ = AsyncMock(return_value=bot)
    bot.__aexit__ = AsyncMock(return_value=False)
    monkeypatch.setattr(cli, "Bot", lambda token: bot)
    services = MagicMock()
    services.close = AsyncMock()
    services.store.connect = AsyncMock()
    services.recovery.run = AsyncMock(
        return_value=RecoveryReport(refunded=["sig-a"], discarded=[], failed=["sig-b"])
    )
    monkeypatch.setattr(cli, "build_services", lambda s, chat, timeout_s: services)
    settings = replace(settings, bot_token="t", chat_id="-100", database_url="postgresql://db")

    code = await cli._recover(settings, 5.0)

    assert code == 1
    out = capsys.readouterr().out
    assert "Refunded  : 1 ['sig-a']" in out
    assert "Failed    : 1 ['sig-b']" in out
    services.close.assert_awaited_once()
