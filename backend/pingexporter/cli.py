# Usage examples:
#   ping-exporter -l 127.0.0.1:9234 8.8.8.8 1.1.1.1
#   ping-exporter -c /etc/ping-exporter.toml --interval 5 --timeout 1
#   ping-exporter -l [::1]:9234 -n blue --type raw --ttl 64 2001:4860:4860::8888

import argparse
import ipaddress
import logging
import sys
from typing import List, Optional

import uvicorn

from pingexporter.config import settings
from pingexporter.errors import ConfigError
from pingexporter.main import create_app
from pingexporter.schemas.target import SocketKind
from pingexporter.services.target_resolver import load_config_file, resolve_listen, resolve_targets

logger = logging.getLogger(__name__)


def _positive_float(value: str) -> float:
    try:
        number = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {value!r}")
    return number


def _ttl(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if not 0 <= number <= 255:
        raise argparse.ArgumentTypeError(f"TTL must be within 0-255: {value!r}")
    return number


def _target(value: str) -> str:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an IP address: {value!r}")
    return value


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="ping-exporter",
        description="ICMP reachability/latency exporter with per-target network namespaces",
    )
    ap.add_argument("-l", "--listen", help="Listen address (e.g. 127.0.0.1:3000)")
    ap.add_argument("-c", "--config", help="Config path (TOML)")
    ap.add_argument("-I", "--interface", help="Default ping interface (interface name, or IP or IP:port to bind to)")
    ap.add_argument("-n", "--netns", help="Default network namespace name")
    ap.add_argument("-i", "--interval", type=_positive_float, help="Default ping interval (in seconds)")
    ap.add_argument("-t", "--timeout", type=_positive_float, help="Default ping timeout (in seconds)")
    ap.add_argument("--type", choices=[kind.value for kind in SocketKind],
                    help="Default ICMP socket type (dgram or raw)")
    ap.add_argument("--ttl", type=_ttl, help="Default ICMP TTL")
    ap.add_argument("target", nargs="*", type=_target, help="Target IPs")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)

    try:
        config = load_config_file(args.config) if args.config else None
        cli_defaults = {
            "interface": args.interface,
            "netns": args.netns,
            "interval": args.interval,
            "timeout": args.timeout,
            "type": SocketKind(args.type) if args.type else None,
            "ttl": args.ttl,
        }
        targets = resolve_targets(config, cli_defaults, args.target, settings)
        host, port = resolve_listen(config, args.listen, settings)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    if not targets:
        logger.warning("No targets configured; serving empty metrics")

    app = create_app(targets)
    uvicorn.run(app, host=host, port=port, log_level=settings.LOG_LEVEL.lower())
    return 0


if __name__ == "__main__":
    sys.exit(main())
