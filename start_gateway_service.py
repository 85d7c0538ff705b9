"""Startup script for the chat gateway."""

import sys

import uvicorn

from config import config
from utils.logger import setup_logger


def main() -> None:
    logger = setup_logger(log_dir=str(config.system.log_dir), level=config.system.log_level)

    host, port = config.server.host, config.server.port
    logger.info("=" * 60)
    logger.info("Epic Copilot - Chat Gateway")
    logger.info("=" * 60)
    logger.info(f"Gateway API : http://{host}:{port}")
    logger.info(f"Chat stream : POST http://{host}:{port}/api/chat")

    try:
        import gateway.app  # noqa: F401
    except Exception as e:
        logger.error(f"Cannot import gateway app: {e}")
        import traceback

        logger.error(traceback.format_exc())
        logger.error("Please install dependencies first: pip install -e .")
        sys.exit(1)

    uvicorn.run(
        "gateway.app:app",
        host=host,
        port=port,
        reload=False,
        log_level=config.system.log_level.lower(),
    )


if __name__ == "__main__":
    main()
