from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import FrozenSet, Optional, Tuple

from dotenv import load_dotenv

from .models import KeyingStrategy, LookupFailurePolicy, Requirement
from .project_constants import DEFAULT_DEPOSIT_LAMPORTS


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _require(name: str) -> str:
    value = _env(name)
    if not value:
        raise RuntimeError(f"Missing environment variable: {name}")
    return value


def _int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Invalid numeric value for environment variable: {name}")


def _float(name: str, default: float) -> float:
    raw = _env(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Invalid numeric value for environment variable: {name}")


def _decimal(name: str) -> Optional[Decimal]:
    raw = _env(name)
    if not raw:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise RuntimeError(f"Invalid numeric value for environment variable: {name}")


def _bool(name: str, default: bool) -> bool:
    raw = _env(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _csv(name: str) -> Tuple[str, ...]:
    return tuple(v.strip() for v in _env(name).split(",") if v.strip())


def resolve_rpc_url(rpc_url_override: str | None = None) -> str:
    # If user provides --rpc-url, trust it.
    if rpc_url_override:
        return rpc_url_override

    env_rpc = _env("RPC_URL")
    if env_rpc:
        return env_rpc

    helius_key = _env("HELIUS_API_KEY")
    if not helius_key:
        raise RuntimeError(
            "Missing HELIUS_API_KEY (or RPC_URL). Put it in .env or export it."
        )
    return f"https://mainnet.helius-rpc.com/?api-key={helius_key}"


def derive_ws_url(rpc_url: str) -> str:
    if rpc_url.startswith("https://"):
        return "wss://" + rpc_url[len("https://"):]
    if rpc_url.startswith("http://"):
        return "ws://" + rpc_url[len("http://"):]
    return rpc_url


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    ws_url: str
    token_mint: str
    token_decimals: int
    requirement: Requirement
    database_url: str = ""
    bot_token: str = ""
    chat_id: str = ""
    chat_name: str = ""
    token_symbol: str = ""
    image_url: str = ""
    exempt_user_ids: FrozenSet[int] = field(default_factory=frozenset)
    admins: FrozenSet[str] = field(default_factory=frozenset)
    keying: KeyingStrategy = KeyingStrategy.SESSION
    enforce_unique_source: bool = True
    # "address": fresh SOL deposit address; "signature": token transfer to the treasury.
    deposit_flow: str = "address"
    deposit_lamports: int = DEFAULT_DEPOSIT_LAMPORTS
    signature_deposit: int = 0
    refund_on_grant: bool = True
    treasury_wallet: str = ""
    treasury_keypair: str = ""
    wallets_dir: str = "wallets"
    # None keeps the watcher polling until a transfer arrives.
    challenge_timeout_s: Optional[float] = 1800.0
    invite_expiry_hours: float = 1.0
    reaper_interval_s: float = 3600.0
    # Stray deposits are looked for this often, 0 disables the job.
    recovery_interval_s: float = 300.0
    recovery_lookback_s: float = 86400.0
    poll_interval_s: float = 5.0
    stake_api_url: str = ""
    stake_api_key: str = ""
    stake_game: str = ""
    stake_action: str = ""
    stake_failure_policy: LookupFailurePolicy = LookupFailurePolicy.ZERO

    @staticmethod
    def from_env(rpc_url_override: str | None = None) -> "Settings":
        load_dotenv()

        rpc_url = resolve_rpc_url(rpc_url_override)
        ws_url = _env("WS_URL") or derive_ws_url(rpc_url)

        holdings = _decimal("REQUIRED_HOLDINGS")
        percent = _decimal("REQUIRED_PERCENT")
        if (holdings is None) == (percent is None):
            raise RuntimeError(
                "Set exactly one of REQUIRED_HOLDINGS or REQUIRED_PERCENT."
            )
        decimals = _int("TOKEN_DECIMALS", 6)
        if holdings is not None:
            requirement = Requirement.absolute(int(holdings * (10**decimals)))
        else:
            requirement = Requirement.percent_of_supply(percent)

        try:
            keying = KeyingStrategy(_env("KEYING_STRATEGY", "session").lower())
        except ValueError:
            raise RuntimeError("KEYING_STRATEGY must be 'session' or 'source'.")
        try:
            policy = LookupFailurePolicy(_env("STAKE_FAILURE_POLICY", "zero").lower())
        except ValueError:
            raise RuntimeError("STAKE_FAILURE_POLICY must be 'zero' or 'raise'.")

        try:
            exempt = frozenset(int(v) for v in _csv("USER_EXCLUDE"))
        except ValueError:
            raise RuntimeError("Invalid numeric value for environment variable: USER_EXCLUDE")

        timeout = _float("CHALLENGE_TIMEOUT", 1800.0)

        flow = _env("DEPOSIT_FLOW", "address").lower()
        if flow not in ("address", "signature"):
            raise RuntimeError("DEPOSIT_FLOW must be 'address' or 'signature'.")
        signature_deposit = _decimal("SIGNATURE_DEPOSIT") or Decimal(1)

        return Settings(
            rpc_url=rpc_url,
            ws_url=ws_url,
            token_mint=_require("TOKEN_ADDRESS"),
            token_decimals=decimals,
            requirement=requirement,
            database_url=_env("DATABASE_URL"),
            bot_token=_env("TG_BOT_TOKEN"),
            chat_id=_env("CHAT_ID"),
            chat_name=_env("CHAT_NAME"),
            token_symbol=_env("TOKEN_SYMBOL"),
            image_url=_env("IMAGE_URL"),
            exempt_user_ids=exempt,
            admins=frozenset(_csv("ADMINS")),
            keying=keying,
            enforce_unique_source=_bool("ENFORCE_UNIQUE_SOURCE", True),
            deposit_flow=flow,
            deposit_lamports=_int("DEPOSIT_LAMPORTS", DEFAULT_DEPOSIT_LAMPORTS),
            signature_deposit=int(signature_deposit * (10**decimals)),
            refund_on_grant=_bool("REFUND_ON_GRANT", True),
            treasury_wallet=_env("TREASURY_WALLET"),
            treasury_keypair=_env("TREASURY_KEYPAIR"),
            wallets_dir=_env("WALLETS_DIR", "wallets"),
            challenge_timeout_s=timeout if timeout > 0 else None,
            invite_expiry_hours=_float("INVITE_EXPIRY_HOURS", 1.0),
            reaper_interval_s=_float("REAPER_INTERVAL", 3600.0),
            recovery_interval_s=_float("RECOVERY_INTERVAL", 300.0),
            recovery_lookback_s=_float("RECOVERY_LOOKBACK", 86400.0),
            poll_interval_s=_float("POLL_INTERVAL", 5.0),
            stake_api_url=_env("STAKE_API_URL"),
            stake_api_key=_env("STAKE_API_KEY"),
            stake_game=_env("STAKE_GAME"),
            stake_action=_env("STAKE_ACTION"),
            stake_failure_policy=policy,
        )

    def require_bot(self) -> None:
        for name, value in (
            ("TG_BOT_TOKEN", self.bot_token),
            ("CHAT_ID", self.chat_id),
            ("DATABASE_URL", self.database_url),
        ):
            if not value:
                raise RuntimeError(f"Missing environment variable: {name}")
