import logging

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update, WebAppInfo
from telegram.ext import ContextTypes

from .config import Config
from .sessions import load_sessions, revoke_user, save_sessions

logger = logging.getLogger(__name__)


HELP_TEXT = """Mini App sign-in

Commands:
/start - Open the Mini App
/logout - Sign out of the Mini App on every device"""


def _save_tokens(config: Config, tokens: dict) -> None:
    if config.sessions_file:
        save_sessions(config.sessions_file, tokens)


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start command: offer the Mini App launch button."""
    config: Config = context.bot_data["config"]
    if not config.webapp_url:
        await update.message.reply_text("Mini App is not configured.")
        return

    button = InlineKeyboardButton("Open app", web_app=WebAppInfo(url=config.webapp_url))
    keyboard = InlineKeyboardMarkup([[button]])
    await update.message.reply_text(HELP_TEXT, reply_markup=keyboard)


async def logout_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /logout command: revoke every Mini App session of the sender."""
    config: Config = context.bot_data["config"]
    tokens: dict = context.bot_data.setdefault("tokens", {})
    user_id = update.effective_user.id

    dropped = revoke_user(tokens, user_id)
    if dropped:
        try:
            _save_tokens(config, tokens)
        except OSError as e:
            logger.error(f"[Session] Could not persist session table: {type(e).__name__}")
    logger.info(f"[Bot] /logout by user {user_id} revoked {dropped} session(s)")
    await update.message.reply_text(
        f"Signed out of {dropped} session{'s' if dropped != 1 else ''}." if dropped
        else "No active sessions."
    )


async def post_init(app) -> None:
    """Load persisted sessions and start the HTTP API if configured."""
    config: Config = app.bot_data["config"]
    tokens: dict = app.bot_data.setdefault("tokens", {})
    if config.sessions_file:
        tokens.update(load_sessions(config.sessions_file))
        logger.info(f"[Session] Loaded {len(tokens)} session(s) from {config.sessions_file}")

    if config.api_port > 0:
        from aiohttp import web as aio_web
        from .web_api import create_web_app

        save_fn = (lambda: _save_tokens(config, tokens)) if config.sessions_file else None
        web_app = create_web_app(config, tokens, save_fn=save_fn)
        runner = aio_web.AppRunner(web_app)
        await runner.setup()
        site = aio_web.TCPSite(runner, config.api_host, config.api_port)
        await site.start()
        app.bot_data["_api_runner"] = runner
        logger.info(f"[API] HTTP API started on {config.api_host}:{config.api_port}")


async def post_shutdown(app) -> None:
    """Clean up the HTTP API server."""
    runner = app.bot_data.get("_api_runner")
    if runner:
        await runner.cleanup()
