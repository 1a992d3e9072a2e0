"""Command-line interface for astarte-e2e."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import Check, E2EApp
from .config import ConfigurationError, load_config
from .fixtures import Variant

LOGGER = logging.getLogger(__name__)


def _add_schedule_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between checks (default: check.interval_seconds)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single check and exit with its result",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="astarte-e2e", description="End-to-end checks for an Astarte realm"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    datastream_parser = subparsers.add_parser(
        Check.INDIVIDUAL_DATASTREAM.value,
        help="Send individual datastream values and check the pushed events",
    )
    datastream_parser.add_argument(
        "--variant",
        choices=[variant.value for variant in Variant],
        default=None,
        help="Data set to send (default: check.variant)",
    )
    _add_schedule_options(datastream_parser)

    interfaces_parser = subparsers.add_parser(
        Check.INTERFACES.value,
        help="Add and remove interfaces and wait for the realm to reflect them",
    )
    _add_schedule_options(interfaces_parser)

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key == "jwt" and value:
                    value = "<redacted>"
                print(f"{key} = {value}")
            print()
        return 0

    check = Check(args.command)
    variant = Variant(args.variant) if getattr(args, "variant", None) else None

    try:
        passed = E2EApp.start(
            config,
            check=check,
            variant=variant,
            interval=args.interval,
            once=args.once,
        )
    except ConfigurationError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    return 0 if passed else 1


if __name__ == "__main__":
    sys.exit(main())
