#!/usr/bin/env python

import argparse
import configparser
import logging

from telegram.ext import Application, CommandHandler

from tma_auth.config import load_config
from tma_auth.handlers import logout_command, post_init, post_shutdown, start_command
from tma_auth.logging_config import setup_logging

logger = logging.getLogger("tma_auth")


def main():
    parser = argparse.ArgumentParser(description="Telegram Mini App sign-in bot and API")
    parser.add_argument("-c", "--config", type=str, default="config.ini", help="Path to config file")
    args = parser.parse_args()

    config_file = configparser.ConfigParser()
    if not config_file.read(args.config):
        parser.error(f"cannot read config file {args.config}")
    config = load_config(config_file)
    setup_logging(config.log_level)

    app = (
        Application.builder()
        .token(config.telegram_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    app.bot_data["config"] = config
    app.bot_data["tokens"] = {}

    app.add_handler(CommandHandler("start", start_command))
    app.add_handler(CommandHandler("logout", logout_command))

    logger.info("Bot started...")
    app.run_polling()


if __name__ == "__main__":
    main()
