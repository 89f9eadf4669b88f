"""CLI entry point for the CommentSlash quota server."""

import argparse
import logging
import sys

from commentslash.core.config import Settings
from commentslash.core.epoch import provider_date_key, time_until_reset, utc_now
from commentslash.core.ledger import Ledger
from commentslash.core.log import RedactingFilter
from commentslash.quota.service import estimate_cost


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="CommentSlash quota server - shared YouTube API quota for bulk comment deletion",
    )
    subparsers = parser.add_subparsers(dest="command")

    # --- serve subcommand (default) ---
    serve_parser = subparsers.add_parser("serve", help="Run the quota HTTP server")
    serve_parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml)",
    )
    serve_parser.add_argument("--host", help="Override server.host")
    serve_parser.add_argument("--port", type=int, help="Override server.port")
    serve_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    # --- status subcommand ---
    status_parser = subparsers.add_parser(
        "status",
        help="Show the persisted ledger and time until the next reset",
    )
    status_parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml)",
    )
    status_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    # --- estimate subcommand ---
    estimate_parser = subparsers.add_parser(
        "estimate",
        help="Estimate quota units for an operation",
    )
    estimate_parser.add_argument(
        "operation",
        choices=["delete", "enrich", "list"],
        help="Operation kind",
    )
    estimate_parser.add_argument("count", type=int, help="Number of items")
    estimate_parser.add_argument(
        "--config",
        default="config/settings.yaml",
        help="Path to settings YAML file (default: config/settings.yaml)",
    )
    estimate_parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    # --- backward compat: top-level flags for serve ---
    parser.add_argument("--config", default="config/settings.yaml", help=argparse.SUPPRESS)
    parser.add_argument("--host", help=argparse.SUPPRESS)
    parser.add_argument("--port", type=int, help=argparse.SUPPRESS)
    parser.add_argument("--verbose", "-v", action="store_true", help=argparse.SUPPRESS)

    args = parser.parse_args(argv)

    # Default to serve when no subcommand given
    if args.command is None:
        args.command = "serve"

    return args


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RedactingFilter())


def load_settings(path: str) -> Settings:
    """Load YAML settings, then apply DATA_DIR / DETAILED_LOGGING from the env."""
    return Settings.from_yaml(path).with_env()


def cmd_serve(args: argparse.Namespace, settings: Settings) -> None:
    """Handle serve subcommand."""
    import uvicorn

    from commentslash.api.app import create_app
    from commentslash.quota.service import build_service
    from commentslash.quota.sweeper import Sweeper

    server = settings.server
    if args.host:
        server = server.model_copy(update={"host": args.host})
    if args.port:
        server = server.model_copy(update={"port": args.port})
    settings = settings.model_copy(update={"server": server})

    service = build_service(settings)
    app = create_app(service, settings, sweeper=Sweeper(service))
    print(f"Serving quota API on {server.host}:{server.port} "
          f"(ledger: {settings.storage.ledger_path})")
    uvicorn.run(app, host=server.host, port=server.port, log_level="info")


def cmd_status(settings: Settings) -> None:
    """Handle status subcommand."""
    quota = settings.quota.with_env()
    ledger = Ledger(settings.storage.ledger_path, tz=quota.provider_timezone)
    record = ledger.load()
    ledger.close()

    now = utc_now()
    today = provider_date_key(now, quota.provider_timezone)
    used = record.total_used if record.date == today else 0
    countdown = time_until_reset(now, quota.provider_timezone)

    print(f"Ledger: {settings.storage.ledger_path}")
    print(f"  Provider day: {today} ({quota.provider_timezone})")
    if record.date != today:
        print(f"  Last record is from {record.date}; today starts at zero")
    print(f"  Used: {used}/{quota.daily_limit}")
    print(f"  Remaining: {max(0, quota.daily_limit - used)}")
    print(f"  Resets in: {countdown.formatted}")


def cmd_estimate(args: argparse.Namespace, settings: Settings) -> None:
    """Handle estimate subcommand."""
    quota = settings.quota.with_env()
    cost = estimate_cost(quota, args.operation, args.count)
    print(f"{args.operation} x {args.count}: {cost} units "
          f"({cost / quota.daily_limit:.1%} of the daily limit)")


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    try:
        settings = load_settings(args.config)
    except (FileNotFoundError, ValueError) as e:
        setup_logging(args.verbose)
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(args.verbose or settings.logging.detailed)

    if args.command == "status":
        cmd_status(settings)
    elif args.command == "estimate":
        try:
            cmd_estimate(args, settings)
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        cmd_serve(args, settings)


if __name__ == "__main__":
    main()
