from __future__ import annotations

import abc
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import TelegramError

from .errors import InviteIssuanceFailed
from .models import Outcome, OutcomeKind, Reason

log = logging.getLogger("gate.chat")

EXPLORER_TX = "https://solscan.io/tx/{}"


class ChatPlatform(abc.ABC):
    @abc.abstractmethod
    async def issue_invite_link(
        self, group_id: str, expiry: timedelta, member_limit: int = 1
    ) -> str:
        """Raises InviteIssuanceFailed."""

    @abc.abstractmethod
    async def revoke_member(self, group_id: str, user_id: int) -> None:
        ...

    @abc.abstractmethod
    async def notify(self, session_key: int, text: str) -> None:
        """Best effort; never raises."""


def render_outcome(outcome: Outcome, symbol: str = "", chat_name: str = "", expiry_hours: float = 1.0) -> str:
    kind = outcome.kind
    if kind is OutcomeKind.GRANTED:
        text = (
            f"*Access to {chat_name or 'the group'} has been granted!*\n"
            f"You can join the channel [*here*]({outcome.invite_link}) "
            f"(INVITE WILL EXPIRE IN {expiry_hours:g} HOUR{'S' if expiry_hours != 1 else ''})"
        )
    elif kind is OutcomeKind.INVITE_FAILED:
        text = (
            "Your holdings were verified but the invite could not be created. "
            "An admin has been notified and will send you a link."
        )
    elif kind is OutcomeKind.NO_MATCH:
        text = "Access Denied. The transfer did not match your verification, please start over."
    elif kind is OutcomeKind.NO_TRANSFER:
        text = "Invalid transaction, doesnt contain a transfer. Please start over..."
    elif kind is OutcomeKind.TIMED_OUT:
        text = "Verification timed out before the transfer could be confirmed. Please try again."
    elif kind is OutcomeKind.REFUND_FAILED:
        text = "Error sending your funds back. An admin has been notified."
    elif outcome.reason is Reason.DUPLICATE_WALLET:
        text = "This wallet has already been used to gain access. Your funds will be sent back."
    elif outcome.reason is Reason.AMOUNT_MISMATCH:
        text = "The amount sent does not match the requested amount. Your funds will be sent back."
    else:
        shortfall = outcome.snapshot.shortfall if outcome.snapshot else 0
        text = f"Sorry you still need {shortfall} more {symbol or 'tokens'} (base units). Your funds will be sent back."

    if outcome.refund_signature:
        text += f"\n*Your refund has been issued!*\n{EXPLORER_TX.format(outcome.refund_signature)}"
    return text


class TelegramChat(ChatPlatform):
    def __init__(self, bot: Bot) -> None:
        self.bot = bot

    async def issue_invite_link(self, group_id, expiry, member_limit=1) -> str:
        try:
            invite = await self.bot.create_chat_invite_link(
                chat_id=group_id,
                expire_date=datetime.now(timezone.utc) + expiry,
                member_limit=member_limit,
            )
        except TelegramError as e:
            raise InviteIssuanceFailed(str(e)) from e
        return invite.invite_link

    async def revoke_member(self, group_id, user_id) -> None:
        # Ban then unban: removes the member without blocking a later re-verification.
        await self.bot.ban_chat_member(chat_id=group_id, user_id=user_id)
        await self.bot.unban_chat_member(chat_id=group_id, user_id=user_id, only_if_banned=True)

    async def notify(self, session_key, text) -> None:
        try:
            await self.bot.send_message(
                chat_id=session_key,
                text=text,
                parse_mode=ParseMode.MARKDOWN,
                disable_web_page_preview=True,
            )
        except TelegramError as e:
            log.warning("Could not notify %s: %s", session_key, e)

    async def is_member(self, group_id: str, user_id: int) -> Optional[bool]:
        try:
            member = await self.bot.get_chat_member(chat_id=group_id, user_id=user_id)
        except TelegramError as e:
            log.warning("Membership lookup for %s failed: %s", user_id, e)
            return None
        return member.status in ("member", "administrator", "creator")
