"""
main.py — meterd-scheduled Entry Point

Usage:
    meterd-scheduled                              # default settings
    meterd-scheduled --inactivity-timeout 5       # exit after 5 idle seconds
    meterd-scheduled --inactivity-timeout 0       # never exit when idle
    meterd-scheduled --log-level DEBUG            # verbose logging
    meterd-scheduled --config path/to/config.yaml

Exit status: 0 clean exit, 1 failure (including bad configuration),
2 invalid options, 3 invalid environment (run as root).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Optional, Sequence

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_OPTIONS = 2
EXIT_INVALID_ENVIRONMENT = 3

PROG = "meterd-scheduled"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="meterd — network-aware download admission scheduler daemon",
    )
    parser.add_argument(
        "--inactivity-timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Exit after this many seconds without client activity "
             "(0 disables; default from config)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $METERD_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )
    parser.add_argument("--host", default=None, help="Override gateway.host")
    parser.add_argument("--port", type=int, default=None, help="Override gateway.port")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from meterd.config.settings import ConfigError, GatewayConfig, load_settings
    from meterd.observability.logger import get_logger, setup_logging
    from pydantic import ValidationError

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
        overrides = {
            key: value
            for key, value in (("host", args.host), ("port", args.port))
            if value is not None
        }
        if overrides:
            # Rebuilt through the model so the section validators run.
            settings.gateway = GatewayConfig.model_validate(
                {**settings.gateway.model_dump(), **overrides}
            )
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n{PROG}: config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your environment and restart.\n",
            file=sys.stderr,
        )
        sys.exit(EXIT_FAILED)
    except (OSError, ValueError, TypeError) as exc:
        print(f"{PROG}: failed to load config: {type(exc).__name__}: {exc}", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(EXIT_FAILED)

    # -- Logging --------------------------------------------------------------
    setup_logging(
        level=args.log_level or settings.log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("meterd.main")
    return settings, log


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as exc:
        # argparse: 0 for --help, 2 for bad options.
        return EXIT_OK if exc.code in (0, None) else EXIT_INVALID_OPTIONS

    # Refuse root before any config, logging or scheduling state exists.
    from meterd.exceptions import InvalidEnvironmentError
    from meterd.lifecycle import check_not_root
    try:
        check_not_root()
    except InvalidEnvironmentError as exc:
        print(f"{PROG}: {exc}", file=sys.stderr)
        return EXIT_INVALID_ENVIRONMENT

    try:
        settings, log = bootstrap(args)
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_FAILED

    from meterd.daemon import Daemon
    daemon = Daemon(settings, inactivity_timeout_s=args.inactivity_timeout)
    try:
        return asyncio.run(daemon.run())
    except OSError as exc:
        # Typically the gateway port is already in use.
        log.error("daemon.failed", error=str(exc), error_type=type(exc).__name__)
        print(f"{PROG}: {exc}", file=sys.stderr)
        return EXIT_FAILED


def entrypoint() -> None:
    sys.exit(main())


if __name__ == "__main__":
    entrypoint()
