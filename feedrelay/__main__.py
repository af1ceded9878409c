"""Entry point for the feed relay bot: python -m feedrelay"""

import asyncio
import sys

from .app import run
from .config import Config
from .logging_config import create_execution_logger, setup_structured_logging


def main() -> int:
    try:
        config = Config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_structured_logging(config.log_level)
    logger = create_execution_logger("main")

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except (ValueError, RuntimeError) as e:
        logger.error(f"Startup failed: {e}", error=str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
