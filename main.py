#!/usr/bin/env python3
"""
Stride SIP Scheduler - process entrypoint

Startup sequence:
1. Logging from LOG_LEVEL
2. Required configuration check (fails loudly, no placeholder secrets)
3. Webhook server with the scheduler attached to its lifespan
"""

import logging
import sys

import uvicorn

from config import Config, ConfigurationError
from webhook_server import create_app

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main() -> None:
    try:
        Config.validate_required()
    except ConfigurationError as e:
        logger.critical(f"🚨 STARTUP_ABORTED: {e}")
        sys.exit(1)

    logger.info(f"🚀 Starting Stride SIP scheduler on {Config.WEBHOOK_HOST}:{Config.WEBHOOK_PORT}")
    uvicorn.run(
        create_app(),
        host=Config.WEBHOOK_HOST,
        port=Config.WEBHOOK_PORT,
        log_level=Config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
