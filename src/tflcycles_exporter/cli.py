"""
tflcycles_exporter CLI entrypoint.

Parses flags, configures logging and serves `tflcycles_exporter.api.app:app` with uvicorn.
Only process bootstrap lives here; see `tflcycles_exporter.exporter.scrape` for scrape logic.
"""

from __future__ import annotations

import argparse
import os

import uvicorn

from tflcycles_exporter import __version__
from tflcycles_exporter.config.settings import get_settings


def parse_listen_address(value: str) -> tuple[str, int]:
    """Parse `HOST:PORT` or `:PORT` (all interfaces) into (host, port)."""
    host, sep, port_text = value.rpartition(":")
    if not sep:
        raise argparse.ArgumentTypeError(f"invalid listen address {value!r}, expected HOST:PORT")
    try:
        port = int(port_text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port in listen address {value!r}") from None
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError(f"port out of range in listen address {value!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, port


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tflcycles-exporter",
        description="Prometheus exporter for TfL Santander Cycles dock and bike availability.",
    )
    parser.add_argument("--version", action="store_true", help="print the exporter version and exit")
    parser.add_argument("--debug", action="store_true", help="enable debug logging in logfmt-style text")
    parser.add_argument(
        "--listen",
        type=parse_listen_address,
        default=None,
        metavar="HOST:PORT",
        help="the address and port to bind the web server to (default from settings, :9722)",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"tflcycles_exporter {__version__}")
        return 0

    if args.debug:
        # Must be set before settings are first loaded.
        os.environ["TFLCYCLES_LOG_LEVEL"] = "DEBUG"

    settings = get_settings()
    host, port = args.listen or (settings.server.host, settings.server.port)

    # Importing the app configures logging from settings.
    from tflcycles_exporter.api.app import app

    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
