import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from .config import LOG_LEVELS, ProxyConfig
from .errors import ConfigurationError
from .server import ProxyServer

logger = logging.getLogger("devproxy")


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="devproxy",
        description="Development reverse proxy: route path prefixes to backend origins.",
    )
    parser.add_argument("-c", "--config", help="JSON configuration file")
    parser.add_argument("--host", help="Address to listen on")
    parser.add_argument("-p", "--port", type=int, help="Port to listen on")
    parser.add_argument("--static-root", help="Directory served for unmatched paths")
    parser.add_argument(
        "-r", "--route", action="append", default=[], metavar="PREFIX=TARGET",
        help="Extra route with changeOrigin enabled, e.g. /api=http://127.0.0.1:8001",
    )
    parser.add_argument("--log-level", type=str.upper, help="Logging level (default INFO)")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ProxyConfig:
    """
    Load the config file and apply command line overrides.

    Raises:
        ConfigurationError: On any invalid setting or route
    """
    config = ProxyConfig(args.config)

    overrides = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.static_root is not None:
        overrides["static_root"] = args.static_root
    if args.log_level is not None:
        overrides["log_level"] = args.log_level
    if args.route:
        proxy = dict(config.get("proxy"))
        for entry in args.route:
            prefix, sep, target = entry.partition("=")
            if not sep or not prefix or not target:
                raise ConfigurationError(f"Invalid --route {entry!r}, expected PREFIX=TARGET")
            proxy[prefix] = {"target": target, "changeOrigin": True}
        overrides["proxy"] = proxy

    config.update(**overrides)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=args.log_level if args.log_level in LOG_LEVELS else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args)
        logging.getLogger().setLevel(config.get("log_level"))
        server = ProxyServer.from_config(config)
        server.bind()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except OSError as e:
        logger.error(f"Cannot listen on {args.host or 'configured address'}: {e}")
        return 1

    stop = threading.Event()

    def request_stop(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    thread = threading.Thread(target=server.start, name="devproxy-accept")
    thread.daemon = True
    thread.start()

    while not stop.wait(0.5):
        if not thread.is_alive():
            return 1

    server.shutdown()
    thread.join(timeout=5)
    return 0


if __name__ == "__main__":
    sys.exit(main())
