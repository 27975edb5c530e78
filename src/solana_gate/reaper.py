from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, List

import asyncpg
from telegram.error import TelegramError

from .chat import ChatPlatform
from .eligibility import EligibilityEvaluator
from .errors import EligibilityLookupError
from .models import Requirement
from .store import TransferStore

log = logging.getLogger("gate.reaper")


@dataclass
class SweepReport:
    checked: int = 0
    revoked: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


class EligibilityReaper:
    """Re-checks granted members and removes those below the threshold.

    Only reads and deletes confirmed rows, so it never contends with a live
    verification, which only works on unconfirmed ones.
    """

    def __init__(
        self,
        store: TransferStore,
        evaluator: EligibilityEvaluator,
        chat: ChatPlatform,
        group_id: str,
        token_mint: str,
        requirement: Requirement,
        exempt_user_ids: FrozenSet[int] = frozenset(),
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.chat = chat
        self.group_id = group_id
        self.token_mint = token_mint
        self.requirement = requirement
        self.exempt_user_ids = exempt_user_ids

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        try:
            required = await self.evaluator.resolve_required(self.token_mint, self.requirement)
        except EligibilityLookupError as e:
            log.error("Sweep skipped, threshold unavailable: %s", e)
            return report

        grants = await self.store.find_confirmed_excluding(self.token_mint, self.exempt_user_ids)
        log.info("Sweep: %d grants to check (required %d)", len(grants), required)

        for grant in grants:
            report.checked += 1
            if not grant.source:
                log.warning("Grant for user %s has no wallet, skipping", grant.user_id)
                continue
            try:
                snapshot = await self.evaluator.evaluate(grant.source, self.token_mint, required)
                if snapshot.eligible:
                    continue
                if snapshot.degraded:
                    # A zero counted for an unreachable source is not evidence of a sale.
                    log.warning(
                        "Sweep: user %s (%s) not re-checked, %s lookup failed",
                        grant.user_id,
                        grant.source,
                        "/".join(snapshot.degraded),
                    )
                    report.failed.append(grant.user_id)
                    continue
                await self.chat.revoke_member(self.group_id, grant.user_id)
                await self.store.delete_confirmed(grant.session_key)
            except (EligibilityLookupError, TelegramError, asyncpg.PostgresError, OSError) as e:
                log.warning("Sweep: user %s (%s) failed: %s", grant.user_id, grant.source, e)
                report.failed.append(grant.user_id)
                continue
            log.info(
                "Sweep: revoked user %s (%s), short by %d",
                grant.user_id,
                grant.source,
                snapshot.shortfall,
            )
            report.revoked.append(grant.user_id)

        log.info(
            "Sweep done: checked=%d revoked=%d failed=%d",
            report.checked,
            len(report.revoked),
            len(report.failed),
        )
        return report
