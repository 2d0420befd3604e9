import logging

import uvicorn

from .api.unified_api import create_app
from .config import SentinelConfig
from .logging_config import setup_logging

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the operator API."""
    setup_logging()
    config = SentinelConfig.from_env()
    logger.info(f"Starting Rail Sentinel on {config.api.host}:{config.api.port}...")
    uvicorn.run(create_app(), host=config.api.host, port=config.api.port, reload=False)


if __name__ == "__main__":
    main()
