from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from bellserver.config import ConfigError, load_config
from bellserver.logging_utils import setup_logging
from bellserver.server import BellServer


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sound classification doorbell server")
    parser.add_argument("--config", help="JSON config file (websocketPort, effective_sounds, ...)")
    parser.add_argument("--host", default=None, help="Listen address (env HOST, default 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (env PORT, default 8765)")
    parser.add_argument("--log-level", default=None, help="Log level (env LOG_LEVEL, default INFO)")
    return parser


async def _amain() -> int:
    args = build_parser().parse_args()
    try:
        config = load_config(args.config, overrides={"host": args.host, "port": args.port, "log_level": args.log_level})
    except ConfigError as e:
        setup_logging("INFO")
        logging.getLogger("bellserver").error("Invalid configuration: %s", e)
        return 2
    setup_logging(config.log_level)

    server = BellServer(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.request_stop)
        except NotImplementedError:
            pass
    await server.run()
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
