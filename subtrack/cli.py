"""Command line entry point.

Usage:
    python -m subtrack.cli check-billing            # queue a billing run
    python -m subtrack.cli check-billing --sync     # run it in this process
    python -m subtrack.cli check-billing --sync --as-of 2025-06-01
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date

from subtrack.bootstrap import bootstrap
from subtrack.jobs import job_scope
from subtrack.subscription.tasks import enqueue_check_billing, run_billing


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="subtrack", description="SubTrack billing operations")
    commands = parser.add_subparsers(dest="command", required=True)

    check = commands.add_parser("check-billing", help="Bill every subscription due on the given date")
    check.add_argument("--sync", action="store_true", help="Run in this process instead of queueing")
    check.add_argument("--as-of", type=_parse_date, default=None, help="Billing date (default: today in the billing timezone)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    bootstrap()

    if args.command == "check-billing":
        if args.sync:
            with job_scope("billing.check_billing"):
                result = run_billing(args.as_of)
            print(json.dumps(result.to_dict(), indent=2))
            return 1 if result.failed else 0

        task_id = enqueue_check_billing(args.as_of)
        print(f"queued billing run: {task_id}")
        return 0

    return 2


if __name__ == "__main__":
    sys.exit(main())
