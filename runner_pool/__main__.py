import argparse
import logging
import os
import sys

import uvicorn
from dotenv import load_dotenv

from runner_pool.config import get_settings
from runner_pool.delegate import Delegate
from runner_pool.errors import ConfigInvalid
from runner_pool.logging_config import configure_logging
from runner_pool.main import create_app
from runner_pool.manager import Manager
from runner_pool.poolfile import load_pool_file


logger = logging.getLogger("runner_pool")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="runner_pool", description="Warm VM pool delegate for CI builds"
    )
    parser.add_argument("--envfile", default=".env", help="environment file to load")
    parser.add_argument("--pool", default=None, help="pool catalog file")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if os.path.exists(args.envfile):
        load_dotenv(args.envfile)
    if args.pool:
        os.environ["POOL_FILE"] = args.pool
    get_settings.cache_clear()
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        specs = load_pool_file(settings.pool_file, settings)
        manager = Manager.from_specs(specs, settings)
    except ConfigInvalid as exc:
        logger.error("invalid configuration: %s", exc)
        return 1

    app = create_app(Delegate(manager, settings))
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.http_host,
            port=settings.http_port,
            log_level=settings.log_level.lower(),
        )
    )
    server.run()
    if not server.started:
        logger.error("delegate failed to start")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
