from __future__ import annotations

import argparse
import asyncio
import json
import logging

from telegram import Bot

from .app import build_services
from .bot import build_application
from .chat import TelegramChat
from .config import Settings
from .gate import format_units
from .keypairs import validate_address
from .store import PgTransferStore


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def cmd_run(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    application = build_application(settings)
    logging.getLogger("gate").info("Bot starting for mint %s", settings.token_mint)
    application.run_polling()
    return 0


async def _sweep(settings: Settings, timeout: float) -> int:
    settings.require_bot()
    async with Bot(settings.bot_token) as bot:
        services = build_services(settings, chat=TelegramChat(bot), timeout_s=timeout)
        try:
            await services.store.connect()
            report = await services.reaper.sweep()
        finally:
            await services.close()
    print(f"Checked : {report.checked}")
    print(f"Revoked : {len(report.revoked)} {report.revoked}")
    print(f"Failed  : {len(report.failed)} {report.failed}")
    return 0


def cmd_sweep(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    return asyncio.run(_sweep(settings, args.timeout))


async def _recover(settings: Settings, timeout: float) -> int:
    settings.require_bot()
    async with Bot(settings.bot_token) as bot:
        services = build_services(settings, chat=TelegramChat(bot), timeout_s=timeout)
        try:
            await services.store.connect()
            report = await services.recovery.run()
        finally:
            await services.close()
    print(f"Refunded  : {len(report.refunded)} {report.refunded}")
    print(f"Discarded : {len(report.discarded)} {report.discarded}")
    print(f"Failed    : {len(report.failed)} {report.failed}")
    return 1 if report.failed else 0


def cmd_recover(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    return asyncio.run(_recover(settings, args.timeout))


async def _check(settings: Settings, wallet: str, timeout: float) -> int:
    services = build_services(settings, timeout_s=timeout)
    try:
        required = await services.evaluator.resolve_required(settings.token_mint, settings.requirement)
        snap = await services.evaluator.evaluate(wallet, settings.token_mint, required)
    finally:
        await services.close()

    d = settings.token_decimals
    print(
        json.dumps(
            {
                "wallet": wallet,
                "mint": settings.token_mint,
                "liquid": format_units(snap.liquid, d),
                "staked": format_units(snap.staked, d),
                "combined": format_units(snap.combined, d),
                "required": format_units(snap.required, d),
                "shortfall": format_units(max(snap.shortfall, 0), d),
                "eligible": snap.eligible,
                "degraded": list(snap.degraded),
            },
            indent=2,
        )
    )
    return 0 if snap.eligible else 1


def cmd_check(args: argparse.Namespace) -> int:
    if not validate_address(args.wallet):
        raise SystemExit(f"Not a wallet address: {args.wallet}")
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    return asyncio.run(_check(settings, args.wallet, args.timeout))


async def _init_db(database_url: str) -> int:
    store = PgTransferStore(database_url)
    try:
        await store.connect()
    finally:
        await store.close()
    print("Schema ready.")
    return 0


def cmd_init_db(args: argparse.Namespace) -> int:
    settings = Settings.from_env(rpc_url_override=args.rpc_url)
    if not settings.database_url:
        raise SystemExit("Missing environment variable: DATABASE_URL")
    return asyncio.run(_init_db(settings.database_url))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="solana-gate",
        description="Token-gated group access verified by an on-chain deposit.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=60.0, help="RPC timeout seconds.")

    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run", help="Run the verification bot.")
    r.set_defaults(func=cmd_run)

    s = sub.add_parser("sweep", help="Run one eligibility sweep over granted members.")
    s.set_defaults(func=cmd_sweep)

    rc = sub.add_parser("recover", help="Return stray deposits nobody is waiting for.")
    rc.set_defaults(func=cmd_recover)

    c = sub.add_parser("check", help="Print the eligibility snapshot of a wallet.")
    c.add_argument("--wallet", required=True, help="Wallet address to evaluate.")
    c.set_defaults(func=cmd_check)

    i = sub.add_parser("init-db", help="Create the transfers and refunds tables.")
    i.set_defaults(func=cmd_init_db)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.verbose)
    raise SystemExit(args.func(args))
