"""
Telegram chat moderation bot - entrypoint.

Runs in webhook mode when WEBHOOK_URL is set, polling otherwise.
"""
import logging
import sys
import traceback

from dotenv import load_dotenv
from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

import moderation_db
from config import load_config
from chatwarden.client import TelegramChatClient
from chatwarden.detectors.antibot import AntiBotRiskScorer
from chatwarden.detectors.duplicates import DuplicateDetector
from chatwarden.engine.pipeline import ModerationPipeline
from chatwarden.errors import ConfigurationError
from chatwarden.handlers.commands import (
    allowdomain_add_command,
    allowdomain_del_command,
    allowdomain_list_command,
    mod_off_command,
    mod_on_command,
    mod_status_command,
    set_limit_command,
    set_logchat_command,
    set_photo_limit_command,
    set_spam_command,
    set_text_limit_command,
)
from chatwarden.handlers.messages import handle_group_message, handle_new_members
from chatwarden.logging import configure_logging
from chatwarden.services.admin_resolver import AdminResolver
from chatwarden.services.bot_guard import BotGuard
from chatwarden.services.cleanup import CleanupService
from chatwarden.services.enforcement import EnforcementService
from chatwarden.services.idempotency import InMemoryIdempotencyGuard
from chatwarden.services.reporter import ModerationReporter

logger = logging.getLogger("chatwarden")

BOT_MESSAGE_DELETE_INTERVAL_SECONDS = 15
REJOIN_INTERVAL_SECONDS = 60

# Known admin commands are consumed by their CommandHandlers first; any other
# command text is an ordinary message and gets moderated.
GROUP_MESSAGE_FILTER = (filters.ChatType.GROUPS | filters.ChatType.CHANNEL) & ~filters.StatusUpdate.ALL


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE):
    """Log errors without crashing the bot."""
    if context.error is None:
        return
    logger.error(f"Error while handling update {update}: {context.error}")
    logger.error("".join(traceback.format_exception(type(context.error), context.error,
                                                     context.error.__traceback__)))


async def cleanup_job(context: ContextTypes.DEFAULT_TYPE):
    try:
        context.bot_data["cleanup"].run()
    except Exception as e:
        logger.error(f"Cleanup job failed: {e}", exc_info=True)


async def bot_message_delete_job(context: ContextTypes.DEFAULT_TYPE):
    try:
        await context.bot_data["cleanup"].drain_bot_message_deletes()
    except Exception as e:
        logger.error(f"Bot message delete job failed: {e}", exc_info=True)


async def rejoin_job(context: ContextTypes.DEFAULT_TYPE):
    try:
        await context.bot_data["cleanup"].drain_pending_rejoins()
    except Exception as e:
        logger.error(f"Rejoin job failed: {e}", exc_info=True)


async def post_init(application: Application):
    application.bot_data["bot_guard"].bot_user_id = application.bot.id
    logger.info(f"Bot identity resolved: @{application.bot.username} (id={application.bot.id})")


def build_application(bot_config) -> Application:
    application = Application.builder().token(bot_config.bot_token).post_init(post_init).build()

    client = TelegramChatClient(application.bot, token=bot_config.bot_token)
    reporter = ModerationReporter(client, bot_config.log_chat_id)
    enforcement = EnforcementService(client, bot_config, reporter)
    admin_resolver = AdminResolver(client)
    pipeline = ModerationPipeline(
        bot_config,
        enforcement,
        admin_resolver,
        idempotency=InMemoryIdempotencyGuard(),
        duplicates=DuplicateDetector(),
        anti_bot=AntiBotRiskScorer(),
    )

    application.bot_data.update({
        "config": bot_config,
        "client": client,
        "enforcement": enforcement,
        "admin_resolver": admin_resolver,
        "pipeline": pipeline,
        "bot_guard": BotGuard(enforcement),
        "cleanup": CleanupService(enforcement, sweep_caches=pipeline.sweep_caches),
    })

    # Admin commands
    application.add_handler(CommandHandler("mod_status", mod_status_command))
    application.add_handler(CommandHandler("mod_on", mod_on_command))
    application.add_handler(CommandHandler("mod_off", mod_off_command))
    application.add_handler(CommandHandler("allowdomain_add", allowdomain_add_command))
    application.add_handler(CommandHandler("allowdomain_del", allowdomain_del_command))
    application.add_handler(CommandHandler("allowdomain_list", allowdomain_list_command))
    application.add_handler(CommandHandler("set_limit", set_limit_command))
    application.add_handler(CommandHandler("set_photo_limit", set_photo_limit_command))
    application.add_handler(CommandHandler("set_text_limit", set_text_limit_command))
    application.add_handler(CommandHandler("set_spam", set_spam_command))
    application.add_handler(CommandHandler("set_logchat", set_logchat_command))

    # Messages
    application.add_handler(MessageHandler(filters.StatusUpdate.NEW_CHAT_MEMBERS, handle_new_members))
    application.add_handler(MessageHandler(GROUP_MESSAGE_FILTER, handle_group_message))

    # Errors
    application.add_error_handler(error_handler)

    job_queue = application.job_queue
    job_queue.run_repeating(cleanup_job, interval=bot_config.cleanup_interval_sec, first=10)
    job_queue.run_repeating(bot_message_delete_job, interval=BOT_MESSAGE_DELETE_INTERVAL_SECONDS, first=5)
    job_queue.run_repeating(rejoin_job, interval=REJOIN_INTERVAL_SECONDS, first=15)
    return application


def main():
    load_dotenv()
    try:
        bot_config = load_config()
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    configure_logging(bot_config.log_level)
    moderation_db.DB_PATH = bot_config.database_path
    moderation_db.init_db()
    logger.info(f"Database ready at {bot_config.database_path}")

    application = build_application(bot_config)
    allowed_updates = [Update.MESSAGE, Update.CHANNEL_POST]

    if bot_config.webhook_url:
        url_path = f"webhook/{bot_config.bot_token}"
        logger.info(f"Starting in webhook mode on port {bot_config.port}")
        application.run_webhook(
            listen="0.0.0.0",
            port=bot_config.port,
            url_path=url_path,
            webhook_url=f"{bot_config.webhook_url}/{url_path}",
            allowed_updates=allowed_updates,
        )
    else:
        logger.info("Starting in polling mode")
        application.run_polling(allowed_updates=allowed_updates)


if __name__ == "__main__":
    main()
