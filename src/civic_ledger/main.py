"""Command line entry point: ``civic-ledger [--port N] [--ledger-url URL]``."""

from __future__ import annotations

import argparse
import os
import sys

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="civic-ledger",
        description="Serve the citizen request pipeline with audit journal and ledger anchoring",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: %(default)s)")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("CIVIC_PORT", "5050")),
        help="Listen port (default: CIVIC_PORT or 5050)",
    )
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    parser.add_argument("--log-level", default="info", choices=LOG_LEVELS)
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Always log JSON, even on a terminal",
    )
    parser.add_argument(
        "--ledger-url",
        default=None,
        help="Ledger node base URL; without one (or CIVIC_LEDGER_URL) a simulated ledger is used",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    from civic_ledger.service.logging import configure_logging

    configure_logging(
        level=args.log_level.upper(),
        json_output=True if args.json_logs else None,
    )

    # The app factory reads its configuration from the environment
    os.environ["CIVIC_PORT"] = str(args.port)
    if args.ledger_url:
        os.environ["CIVIC_LEDGER_URL"] = args.ledger_url

    import uvicorn

    try:
        uvicorn.run(
            "civic_ledger.service.app:create_app_from_env",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=args.log_level,
            log_config=None,
        )
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
