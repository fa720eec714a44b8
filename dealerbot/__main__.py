"""Dealerbot process entry-point.

Usage:
    python -m dealerbot batch [--order N | --overdue] [--limit N]
    python -m dealerbot rotate
    python -m dealerbot job JOB_ID
    python -m dealerbot serve [--host HOST] [--port PORT]

``batch`` runs one batch-scheduler invocation and prints its summary as
JSON; ``serve`` starts the HTTP trigger surface.  The orchestration logic
lives in ``dealerbot.orchestrator``.  Logging is configured before anything
else so every module obtains a working logger on first import.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from dealerbot.core import configure_logging
from dealerbot.core.exceptions import ConfigError, RegistryUnavailableError
from dealerbot.core.settings import Settings


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dealerbot",
        description="Scheduled vehicle-listing discovery and extraction.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    batch = sub.add_parser("batch", help="Run one batch over due sources.")
    which = batch.add_mutually_exclusive_group()
    which.add_argument(
        "--order",
        type=int,
        default=None,
        metavar="N",
        help="Process sources with this rotation rank instead of the hour bucket.",
    )
    which.add_argument(
        "--overdue",
        action="store_true",
        help="Process overdue sources (never processed or older than 48h) from any bucket.",
    )
    batch.add_argument(
        "--limit",
        type=int,
        default=None,
        metavar="N",
        help="Number of sources to process (clamped to BATCH_MAX_LIMIT).",
    )

    sub.add_parser("rotate", help="Reassign dense rotation ranks to active sources.")

    job = sub.add_parser("job", help="Print one job from the ledger.")
    job.add_argument("job_id")

    serve = sub.add_parser("serve", help="Serve the HTTP trigger endpoints.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = _build_parser().parse_args(argv)

    try:
        configure_logging(level=args.log_level, fmt=args.log_format)
    except ValueError as exc:
        print(f"dealerbot: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    logger = logging.getLogger(__name__)

    # Lazy imports keep `--help` fast.
    from dealerbot.orchestrator.runner import (  # noqa: PLC0415
        lookup_job,
        reassign_ranks_once,
        run_batch_once,
    )
    from dealerbot.orchestrator.scheduler import BatchSelector  # noqa: PLC0415

    try:
        settings = Settings()
        if args.command == "batch":
            batch = asyncio.run(
                run_batch_once(
                    BatchSelector(rank=args.order, overdue=args.overdue), args.limit, settings
                )
            )
            print(json.dumps(batch.to_summary(), indent=2))  # noqa: T201
            if batch.sources_failed:
                logger.warning("%d source(s) failed.", batch.sources_failed)
        elif args.command == "rotate":
            ranked = asyncio.run(reassign_ranks_once(settings))
            print(json.dumps({"success": True, "ranked": ranked}))  # noqa: T201
        elif args.command == "job":
            found = asyncio.run(lookup_job(args.job_id, settings))
            if found is None:
                print(json.dumps({"found": False}))  # noqa: T201
                sys.exit(1)
            print(found.model_dump_json(indent=2))  # noqa: T201
        elif args.command == "serve":
            import uvicorn  # noqa: PLC0415

            from dealerbot.api.app import create_app  # noqa: PLC0415

            logger.info("Serving on %s:%d", args.host, args.port)
            uvicorn.run(create_app(settings), host=args.host, port=args.port, log_config=None)
    except ConfigError as exc:
        logger.critical("Configuration error: %s", exc)
        sys.exit(1)
    except RegistryUnavailableError as exc:
        logger.critical("Source registry unavailable: %s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
