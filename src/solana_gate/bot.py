from __future__ import annotations

import logging

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .app import Services, build_services
from .chat import TelegramChat
from .config import Settings
from .errors import AlreadyOpen, ChallengeCollision, InvalidSignatureFormat
from .gate import format_units

log = logging.getLogger("gate.bot")

START_VALIDATION = "start_validation"


def _services(context: ContextTypes.DEFAULT_TYPE) -> Services:
    return context.application.bot_data["services"]


def welcome_text(settings: Settings, bot_name: str) -> str:
    if settings.requirement.amount is not None:
        hold = format_units(settings.requirement.amount, settings.token_decimals)
    else:
        hold = f"{settings.requirement.percent}% of the supply of"
    symbol = settings.token_symbol
    return (
        f"*Welcome to the {bot_name} Bot!*\n\n"
        f"This bot will help determine if you hold enough {symbol} tokens to join "
        f"the exclusive {settings.chat_name} on Telegram.\n\n"
        f"*Please ensure you're interacting with the official {bot_name}.* "
        "Never send tokens or private information to any third-party accounts.\n\n"
        "*Here's how it works:*\n"
        f"1. Make sure you have at least *{hold}* {symbol} tokens in your wallet. "
        "Staked tokens count if you send from the wallet you staked with.\n"
        "2. Press the button below to receive your verification instructions.\n"
        "3. Send the requested deposit from your holding wallet. It will be refunded."
    )


async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    settings = _services(context).settings
    me = await context.bot.get_me()
    markup = InlineKeyboardMarkup(
        [[InlineKeyboardButton("Begin Validation", callback_data=START_VALIDATION)]]
    )
    text = welcome_text(settings, me.first_name)
    if settings.image_url:
        await update.effective_chat.send_photo(
            settings.image_url, caption=text, parse_mode=ParseMode.MARKDOWN, reply_markup=markup
        )
    else:
        await update.effective_chat.send_message(text, parse_mode=ParseMode.MARKDOWN, reply_markup=markup)


async def on_begin(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    await query.answer()
    services = _services(context)
    settings = services.settings
    chat_id = update.effective_chat.id
    user = update.effective_user
    log.info("User %s(%s) started validation", user.username, user.id)

    chat: TelegramChat = services.gate.chat
    if await chat.is_member(settings.chat_id, user.id):
        await context.bot.send_message(
            chat_id,
            "Looks like you already have access to the group. If you are having trouble "
            f'finding it search for "{settings.chat_name}" in your Telegram.',
        )
        return

    try:
        await services.gate.begin(chat_id, user.id)
    except AlreadyOpen:
        await context.bot.send_message(
            chat_id,
            "You are already in the middle of a validation process. "
            "Please complete it before starting a new one.",
        )
    except ChallengeCollision:
        await context.bot.send_message(chat_id, "Error during validation, please try again.")


async def cmd_verify(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = _services(context)
    raw = " ".join(context.args or [])
    try:
        accepted = services.gate.submit_signature(update.effective_chat.id, update.effective_user.id, raw)
    except InvalidSignatureFormat:
        await update.effective_chat.send_message("That does not look like a transaction signature.")
        return
    if not accepted:
        await update.effective_chat.send_message("No verification is waiting for a signature. Press /start.")


async def on_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = _services(context)
    services.gate.submit_reply(update.effective_chat.id, update.effective_user.id, update.message.text)


async def cmd_auth(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = _services(context)
    if len(context.args or []) != 2:
        await update.effective_chat.send_message("Usage: /auth <wallet> <userId>")
        return
    wallet, user_id = context.args
    try:
        link = await services.gate.grant_manually(update.effective_user.id, wallet, int(user_id))
    except PermissionError:
        await update.effective_chat.send_message("You do not have permission to manually authorize users.")
        return
    except ValueError as e:
        await update.effective_chat.send_message(f"Error during manual auth: {e}")
        return
    await update.effective_chat.send_message(
        f"User has been manually validated. Please provide them with this link {link} "
        "(it will expire in 12 hours)"
    )


async def cmd_broadcast(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    services = _services(context)
    user = update.effective_user
    if not user.username or user.username not in services.settings.admins:
        return
    text = " ".join(context.args or [])
    if not text:
        return
    count = 0
    for session_key in await services.store.distinct_sessions():
        try:
            await context.bot.send_message(session_key, text)
            count += 1
        except TelegramError as e:
            log.debug("Broadcast to %s failed: %s", session_key, e)
    await update.effective_chat.send_message(f"Broadcasted message to {count} users.")


async def reaper_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    await _services(context).reaper.sweep()


async def recovery_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    await _services(context).recovery.run()


async def _post_init(application: Application) -> None:
    await application.bot_data["services"].store.connect()


async def _post_shutdown(application: Application) -> None:
    await application.bot_data["services"].close()


def build_application(settings: Settings) -> Application:
    settings.require_bot()
    application = (
        Application.builder()
        .token(settings.bot_token)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )
    services = build_services(settings, chat=TelegramChat(application.bot))
    application.bot_data["services"] = services

    application.add_handler(CommandHandler("start", cmd_start))
    # Verifications run for minutes; do not hold up other updates.
    application.add_handler(CallbackQueryHandler(on_begin, pattern=f"^{START_VALIDATION}$", block=False))
    application.add_handler(CommandHandler("verify", cmd_verify))
    application.add_handler(CommandHandler("auth", cmd_auth))
    application.add_handler(CommandHandler("broadcast", cmd_broadcast))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, on_text))

    application.job_queue.run_repeating(
        reaper_job,
        interval=settings.reaper_interval_s,
        first=settings.reaper_interval_s,
        name="eligibility-reaper",
    )
    if settings.recovery_interval_s > 0:
        application.job_queue.run_repeating(
            recovery_job,
            interval=settings.recovery_interval_s,
            first=settings.recovery_interval_s,
            name="deposit-recovery",
        )
    return application
