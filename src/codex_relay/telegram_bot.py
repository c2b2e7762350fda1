import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import Application, ApplicationBuilder, CommandHandler, ContextTypes, MessageHandler, filters

from codex_relay.domain.sessions import Channel
from codex_relay.services.commands import CommandRouter
from codex_relay.services.crash_log import CrashLog
from codex_relay.util import chunk_text

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 6000
MAX_MESSAGE_CHARS = 3800
TYPING_REFRESH_SEC = 4.0

COMMAND_NAMES = ("help", "start", "new", "reset", "session", "where", "history", "plan", "reasoning", "log", "cron", "slot")


def is_allowed(chat_id: int, context: ContextTypes.DEFAULT_TYPE) -> bool:
    allowed = context.bot_data.get("allowed_chat_ids") or frozenset()
    return not allowed or str(chat_id) in allowed


async def _reply_chunks(update: Update, text: str) -> None:
    for chunk in chunk_text(text or "(no output)", MAX_MESSAGE_CHARS):
        await update.message.reply_text(chunk)


async def _keep_typing(context: ContextTypes.DEFAULT_TYPE, chat_id: int) -> None:
    while True:
        try:
            await context.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        except Exception:
            logger.debug("typing indicator failed chat=%s", chat_id, exc_info=True)
        await asyncio.sleep(TYPING_REFRESH_SEC)


async def handle_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.text or not update.effective_chat:
        return
    chat_id = update.effective_chat.id
    if not is_allowed(chat_id, context):
        logger.info("telegram.denied chat=%s", chat_id)
        return
    router: CommandRouter = context.bot_data["router"]
    reply = await router.handle_command(str(chat_id), Channel.BOT, update.message.text)
    await _reply_chunks(update, reply.text)


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    if not update.message or not update.message.text or not update.effective_chat:
        return
    chat_id = update.effective_chat.id
    if not is_allowed(chat_id, context):
        logger.info("telegram.denied chat=%s", chat_id)
        return
    text = update.message.text
    if len(text) > MAX_INPUT_CHARS:
        await update.message.reply_text("Input too long.")
        return
    router: CommandRouter = context.bot_data["router"]
    typing = asyncio.create_task(_keep_typing(context, chat_id))
    try:
        reply = await router.run_prompt(str(chat_id), Channel.BOT, text)
    finally:
        typing.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await typing
    await _reply_chunks(update, reply.text)


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    logger.error("Telegram handler error", exc_info=context.error)
    crash_log: Optional[CrashLog] = context.bot_data.get("crash_log")
    if crash_log is not None and context.error is not None:
        try:
            crash_log.append("telegram", context.error)
        except OSError:
            logger.exception("failed to record crash")
    if isinstance(update, Update) and update.message:
        try:
            await update.message.reply_text("Internal error. It has been logged.")
        except Exception:
            logger.debug("failed to report error to chat", exc_info=True)


def build_application(
    token: str,
    router: CommandRouter,
    allowed_chat_ids: frozenset = frozenset(),
    crash_log: Optional[CrashLog] = None,
    post_init: Optional[Callable[[Application], Awaitable[None]]] = None,
) -> Application:
    builder = ApplicationBuilder().token(token).concurrent_updates(True)
    if post_init is not None:
        builder = builder.post_init(post_init)
    app = builder.build()
    app.bot_data["router"] = router
    app.bot_data["allowed_chat_ids"] = allowed_chat_ids
    app.bot_data["crash_log"] = crash_log

    app.add_handler(CommandHandler(list(COMMAND_NAMES), handle_command))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    app.add_error_handler(handle_error)
    return app
