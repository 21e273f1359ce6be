"""Command-line entrypoint for perpetual harvest sweeps."""

from __future__ import annotations

import argparse
import logging
from typing import Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from models import Base

from .config import HarvestConfig, load_config_from_env
from .http_client import HttpFetcher
from .kinds import HarvestContext, get_sweep_kind, list_sweep_kinds

LOGGER = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Continuously harvest remote feeds into the database")
    parser.add_argument("--kind", choices=list_sweep_kinds(), required=True, help="Subject class to sweep")
    parser.add_argument(
        "--db-url",
        type=str,
        default=None,
        help="SQLAlchemy database URL (defaults to HARVESTER_DATABASE_URL)",
    )
    parser.add_argument("--batch-size", type=int, default=None, help="Subjects leased per batch")
    parser.add_argument(
        "--reset-sleep",
        type=float,
        default=None,
        help="Seconds to idle after a generation completes",
    )
    parser.add_argument(
        "--lease-timeout",
        type=float,
        default=None,
        help="Seconds after which a live lease is considered abandoned (0 disables)",
    )
    parser.add_argument("--once", action="store_true", help="Stop after one full generation")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def build_config(args: argparse.Namespace) -> HarvestConfig:
    config = load_config_from_env()
    if args.db_url:
        config.db_url = args.db_url
    if args.batch_size is not None:
        if args.batch_size < 1:
            raise ValueError("--batch-size must be at least 1")
        config.sweep.batch_size = args.batch_size
    if args.reset_sleep is not None:
        config.sweep.reset_sleep = max(0.0, args.reset_sleep)
    if args.lease_timeout is not None:
        config.sweep.lease_timeout = args.lease_timeout if args.lease_timeout > 0 else None
    return config


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        kind = get_sweep_kind(args.kind)
    except KeyError as exc:
        parser.error(str(exc))

    try:
        config = build_config(args)
    except ValueError as exc:
        parser.error(str(exc))

    if not config.db_url:
        parser.error("--db-url is required")

    engine = create_engine(config.db_url)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine)

    with HttpFetcher(config.fetch) as fetcher:
        context = HarvestContext(config=config, fetcher=fetcher, session_factory=SessionLocal)
        scheduler = kind.build_scheduler(context)
        LOGGER.info("Starting %s sweep (batch size %d)", kind.slug, config.sweep.batch_size)
        if args.once:
            stats = scheduler.run_generation()
            LOGGER.info(
                "Finished %s generation: %d processed, %d succeeded, %d failed, %d records",
                kind.slug,
                stats.processed,
                stats.succeeded,
                stats.failed,
                stats.records,
            )
        else:
            scheduler.run_forever()

    return 0


__all__ = ["build_arg_parser", "build_config", "configure_logging", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
