from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .chat import ChatPlatform
from .config import Settings
from .confirmation import ConfirmationProtocol
from .dispatcher import OutcomeDispatcher
from .eligibility import EligibilityEvaluator, StakeClient
from .gate import Gatekeeper
from .keypairs import KeyRing
from .ledger import LedgerClient
from .project_constants import DEFAULT_RECOVERY_AGE_S
from .reaper import EligibilityReaper
from .recovery import DepositRecovery
from .rpc import RpcClient
from .session import SessionRegistry
from .store import MemoryTransferStore, PgTransferStore, TransferStore
from .watcher import DepositWatcher


@dataclass
class Services:
    settings: Settings
    store: TransferStore
    ledger: LedgerClient
    stake: Optional[StakeClient]
    evaluator: EligibilityEvaluator
    sessions: SessionRegistry
    gate: Optional[Gatekeeper] = None
    reaper: Optional[EligibilityReaper] = None
    recovery: Optional[DepositRecovery] = None

    async def close(self) -> None:
        await self.store.close()
        await self.ledger.close()
        if self.stake is not None:
            await self.stake.close()


def build_store(settings: Settings) -> TransferStore:
    if settings.database_url:
        return PgTransferStore(settings.database_url)
    return MemoryTransferStore()


def build_services(
    settings: Settings,
    chat: Optional[ChatPlatform] = None,
    store: Optional[TransferStore] = None,
    timeout_s: float = 60.0,
) -> Services:
    """Wires the components. Without a chat platform only evaluation is available."""
    ledger = LedgerClient(RpcClient(settings.rpc_url, timeout_s=timeout_s), settings.ws_url)
    stake = None
    if settings.stake_api_url:
        stake = StakeClient(
            settings.stake_api_url,
            settings.stake_api_key,
            settings.stake_game,
            settings.stake_action,
        )
    evaluator = EligibilityEvaluator(
        ledger, settings.token_decimals, stake=stake, policy=settings.stake_failure_policy
    )
    services = Services(
        settings=settings,
        store=store or build_store(settings),
        ledger=ledger,
        stake=stake,
        evaluator=evaluator,
        sessions=SessionRegistry(),
    )
    if chat is None:
        return services

    keyring = KeyRing(settings.wallets_dir, settings.treasury_keypair)
    dispatcher = OutcomeDispatcher(
        services.store,
        evaluator,
        chat,
        ledger,
        keyring,
        group_id=settings.chat_id,
        invite_expiry=timedelta(hours=settings.invite_expiry_hours),
        refund_on_grant=settings.refund_on_grant,
    )
    services.gate = Gatekeeper(
        settings,
        services.store,
        services.sessions,
        DepositWatcher(ledger, poll_interval_s=settings.poll_interval_s),
        ConfirmationProtocol(services.store, settings.keying, settings.enforce_unique_source),
        dispatcher,
        keyring,
        chat,
    )
    services.reaper = EligibilityReaper(
        services.store,
        evaluator,
        chat,
        group_id=settings.chat_id,
        token_mint=settings.token_mint,
        requirement=settings.requirement,
        exempt_user_ids=settings.exempt_user_ids,
    )
    services.recovery = DepositRecovery(
        services.store,
        ledger,
        keyring,
        dispatcher,
        services.sessions,
        token_mint=settings.token_mint,
        treasury_wallet=settings.treasury_wallet,
        min_age_s=settings.challenge_timeout_s or DEFAULT_RECOVERY_AGE_S,
        lookback_s=settings.recovery_lookback_s,
        refund_granted=settings.refund_on_grant,
    )
    return services
