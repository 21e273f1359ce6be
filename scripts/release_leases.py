"""Return leased sweep subjects to idle so the next pass picks them up again."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure the repository root is importable when executing from the scripts/ directory.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from harvester.kinds import get_sweep_kind, list_sweep_kinds
from harvester.leases import SubjectStore, SubjectStoreError


LOGGER = logging.getLogger(__name__)


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Clear processing leases of one subject class. Subjects already completed "
            "in the current generation are left alone."
        )
    )
    parser.add_argument("--kind", choices=list_sweep_kinds(), required=True, help="Subject class")
    parser.add_argument(
        "--db-url",
        help="SQLAlchemy database URL. Defaults to HARVESTER_DATABASE_URL.",
    )
    parser.add_argument(
        "--older-than",
        type=float,
        default=None,
        help="Only release leases taken more than this many seconds ago.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report matching leases without releasing them.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging output.")
    return parser.parse_args(argv)


def resolve_db_url(cli_db_url: str | None) -> str:
    if cli_db_url:
        return cli_db_url
    env_db = os.getenv("HARVESTER_DATABASE_URL")
    if env_db:
        return env_db
    raise SystemExit("No database URL provided. Supply --db-url or set HARVESTER_DATABASE_URL.")


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    older_than = None
    if args.older_than is not None and args.older_than > 0:
        older_than = timedelta(seconds=args.older_than)

    engine = create_engine(resolve_db_url(args.db_url))
    store = SubjectStore(sessionmaker(bind=engine), get_sweep_kind(args.kind).lease)

    try:
        if args.dry_run:
            count = store.count_leased(older_than)
            LOGGER.info("[DRY-RUN] %d %s lease(s) would be released.", count, args.kind)
            return 0
        released = store.release_stale(older_than)
    except SubjectStoreError as exc:
        LOGGER.error("Failed to release %s leases: %s", args.kind, exc)
        return 1

    LOGGER.info("Released %d %s lease(s).", released, args.kind)
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
