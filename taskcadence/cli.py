from __future__ import annotations

import argparse
import sys
from datetime import date

from .config import get_settings
from .db import Base, SessionLocal, engine
from .generation import run_for_all_users, run_for_user
from .logging_setup import setup_logging
from .migrations import ensure_db_schema


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD") from e


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="taskcadence")
    sub = parser.add_subparsers(dest="command", required=True)

    p_gen = sub.add_parser(
        "generate",
        help="Materialize recurring task instances up to a horizon date.",
    )
    target = p_gen.add_mutually_exclusive_group(required=True)
    target.add_argument("--user-id", type=int, help="Run a pass for one user")
    target.add_argument("--all", action="store_true", help="Run a pass for every user with templates")
    p_gen.add_argument(
        "--horizon",
        type=_parse_date,
        default=None,
        help="Last due date to materialize (default: the user's today + generation.horizon_days)",
    )

    args = parser.parse_args(argv)

    s = get_settings()
    setup_logging(level=s.logging.level, log_dir=None)

    if args.command == "generate":
        Base.metadata.create_all(bind=engine)
        ensure_db_schema(engine)

        if args.all:
            results = run_for_all_users(SessionLocal, horizon_date=args.horizon, source="cli")
        else:
            with SessionLocal() as db:
                results = [run_for_user(db, user_id=args.user_id, horizon_date=args.horizon, source="cli")]

        failed = False
        for r in results:
            if r.busy:
                print(f"user {r.user_id}: busy")
                continue
            print(f"user {r.user_id}: {len(r.instances_created)} created")
            for template_id, msg in sorted(r.errors.items()):
                failed = True
                print(f"  template {template_id} failed: {msg}", file=sys.stderr)
        if failed:
            sys.exit(1)
        return

    parser.print_help()
    sys.exit(2)


if __name__ == "__main__":
    main()
