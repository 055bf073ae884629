import argparse
import logging
import sys
from typing import List, Optional

from rewrite_proxy import __version__
from rewrite_proxy.config.settings import load_config
from rewrite_proxy.errors import ConfigError
from rewrite_proxy.logging_setup import configure_logging
from rewrite_proxy.proxy.server import ProxyServer
from rewrite_proxy.vars import CONFIG_PATH

logger = logging.getLogger("uvicorn.error")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rewrite-proxy",
        description="HTTP reverse proxy that rewrites request bodies",
    )
    parser.add_argument(
        "--config",
        default=CONFIG_PATH,
        help="path to the proxy configuration file (default: %(default)s)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        configure_logging()
        logger.error("[Config] %s", e)
        return 1

    configure_logging(config.logging.level, config.logging.file)
    logger.info("[Config] Loaded configuration from %s", args.config)
    logger.debug("[Config] Server: %s", config.server.model_dump())
    logger.debug("[Config] Targets: %s", config.target_urls())
    logger.debug("[Config] Debug mode: %s", config.debug.enabled)

    try:
        server = ProxyServer(config)
    except ConfigError as e:
        logger.error("[Config] %s", e)
        return 1

    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
