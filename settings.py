"""Command-line and environment configuration for the archive proxy."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import Optional, Sequence

from routing import DEFAULT_PROBE_ADDRESS

# Reference deployment constants.
LISTEN_PORT = 13714
PING_INTERVAL_SECONDS = 30.0
CHAIN_ID = "0x38"  # 56, BSC mainnet


@dataclass
class ProxySettings:
    endpoints: list[str]
    listen_host: str = "0.0.0.0"
    listen_port: int = LISTEN_PORT
    ping_interval_seconds: float = PING_INTERVAL_SECONDS
    chain_id: str = CHAIN_ID
    probe_address: str = DEFAULT_PROBE_ADDRESS
    status_port: int = 0
    log_level: str = "INFO"
    max_message_bytes: int = 10 * 1024 * 1024
    backend_max_message_bytes: Optional[int] = None

    def validate(self) -> "ProxySettings":
        if not self.endpoints:
            raise ValueError("at least one backend endpoint is required")
        if self.ping_interval_seconds <= 0:
            raise ValueError("ping interval must be positive")
        if not self.chain_id.startswith("0x"):
            raise ValueError(f"chain id must be 0x-prefixed hex: {self.chain_id!r}")
        for name, port in (("listen port", self.listen_port), ("status port", self.status_port)):
            if not 0 <= port <= 65535:
                raise ValueError(f"{name} out of range: {port}")
        if self.status_port and self.status_port == self.listen_port:
            raise ValueError("status port must differ from the listen port")
        self.log_level = self.log_level.upper()
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {self.log_level}")
        return self


def _env(name: str, default: str) -> str:
    return os.getenv(f"ARCHIVE_PROXY_{name}", default)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archive-proxy",
        description="Route JSON-RPC calls to partial-history archive nodes by block height.",
        epilog="Example: %(prog)s ws://127.0.0.1:1234 ws://127.0.0.1:1235",
    )
    parser.add_argument(
        "endpoints",
        nargs="*",
        metavar="BACKEND_URL",
        help="backend node URL (ws://, wss://, http:// or https://); "
        "falls back to the comma-separated ARCHIVE_PROXY_BACKENDS",
    )
    parser.add_argument("--host", default=_env("HOST", "0.0.0.0"), help="listen address (default: %(default)s)")
    parser.add_argument(
        "--port", type=int, default=int(_env("PORT", str(LISTEN_PORT))),
        help="listen port (default: %(default)s)",
    )
    parser.add_argument(
        "--ping-interval", type=float, default=float(_env("PING_INTERVAL", str(PING_INTERVAL_SECONDS))),
        metavar="SECS", help="seconds between client liveness probes (default: %(default)s)",
    )
    parser.add_argument(
        "--chain-id", default=_env("CHAIN_ID", CHAIN_ID),
        help="value answered for eth_chainId (default: %(default)s)",
    )
    parser.add_argument(
        "--probe-address", default=_env("PROBE_ADDRESS", DEFAULT_PROBE_ADDRESS),
        help="account present at genesis, used to probe retained state (default: %(default)s)",
    )
    parser.add_argument(
        "--status-port", type=int, default=int(_env("STATUS_PORT", "0")),
        help="HTTP port for /health and /routes, 0 disables it (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level", default=_env("LOG_LEVEL", "INFO"),
        help="logging level (default: %(default)s)",
    )
    return parser


def load_settings(argv: Optional[Sequence[str]] = None) -> ProxySettings:
    """Build settings from arguments, then ``ARCHIVE_PROXY_*`` variables, then defaults."""
    parser = build_parser()
    args = parser.parse_args(argv)
    endpoints = list(args.endpoints)
    if not endpoints:
        endpoints = [e.strip() for e in _env("BACKENDS", "").split(",") if e.strip()]
    settings = ProxySettings(
        endpoints=endpoints,
        listen_host=args.host,
        listen_port=args.port,
        ping_interval_seconds=args.ping_interval,
        chain_id=args.chain_id.strip(),
        probe_address=args.probe_address.strip(),
        status_port=args.status_port,
        log_level=args.log_level,
    )
    try:
        return settings.validate()
    except ValueError as e:
        parser.error(str(e))
        raise  # parser.error exits


def configure_logging(level: str) -> None:
    log_fmt = (
        "%(asctime)s %(levelname)s [%(name)s] %(message)s"
        if level != "DEBUG"
        else "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
    )
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stdout)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
