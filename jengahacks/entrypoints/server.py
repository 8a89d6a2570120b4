"""HTTP server entrypoint.

Loads ``.env``, configures logging and serves the registration API with
uvicorn on the host/port from settings.
"""

import argparse
import logging
from typing import List, Optional

import uvicorn
from dotenv import load_dotenv

from jengahacks.api.app import create_app
from jengahacks.config.core import last_yaml_path, load_settings, sanitize_dict
from jengahacks.utils.logging_config import configure_logging

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="jengahacks-server")
    parser.add_argument("--env-file", default=".env")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args(argv)

    env_loaded = load_dotenv(args.env_file, override=False)
    settings = load_settings()
    configure_logging(settings.logging.level, mask_emails=settings.logging.mask_emails)
    logger.info(
        {
            "env_file_loaded": env_loaded,
            "yaml_config": last_yaml_path(),
            "settings": sanitize_dict(settings.model_dump()),
        }
    )

    app = create_app(settings)
    uvicorn.run(
        app,
        host=args.host or settings.api.host,
        port=args.port or settings.api.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
