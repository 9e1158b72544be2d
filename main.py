"""
Simple CLI runner: fetch the latest emails once and print the JSON envelope
"""
import asyncio
import json
import sys

from loguru import logger

from config import create_settings, setup_logging
from email_fetcher import get_latest_emails
from errors import ConfigurationError, MailFunctionError


async def main() -> int:
    """Main entry point for CLI runner"""
    try:
        settings = create_settings()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging(settings.log_level)
    logger.info("Fetching latest emails from CLI")

    try:
        response = await get_latest_emails(settings)
    except MailFunctionError as e:
        logger.error(f"Failed to fetch emails: {e}")
        return 1

    print(json.dumps(response.to_body(), indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
