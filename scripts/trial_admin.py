"""Operator CLI for the trial gate: schema bootstrap, ledger overrides and housekeeping.

Run from the repository root with ``python -m scripts.trial_admin <command>``.
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from dotenv import load_dotenv

load_dotenv()

import database  # noqa: E402
from services.trial_types import TrialLedger  # noqa: E402
from web.deps import get_behavior_store, get_prompt_optimizer, get_trial_manager  # noqa: E402

logger = logging.getLogger(__name__)


def _format_ledger(ledger: TrialLedger) -> str:
    blocked = f"blocked_until={ledger.blocked_until.isoformat()}" if ledger.is_blocked and ledger.blocked_until else "active"
    return f"{ledger.fingerprint} remaining={ledger.remaining}/{ledger.total} actions={len(ledger.actions)} {blocked}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Administer trial ledgers and background state.")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO).")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create missing tables.")

    show_parser = subparsers.add_parser("show", help="Print a trial ledger.")
    show_parser.add_argument("fingerprint")

    reset_parser = subparsers.add_parser("reset", help="Restore the full quota and lift any block.")
    reset_parser.add_argument("fingerprint")
    reset_parser.add_argument("--keep-actions", action="store_true", help="Keep the recorded action history.")
    reset_parser.add_argument("--reason", default="operator", help="Reason recorded with the reset event.")

    block_parser = subparsers.add_parser("block", help="Block a fingerprint from consuming trials.")
    block_parser.add_argument("fingerprint")
    block_parser.add_argument("--hours", type=int, default=None, help="Block duration (default: TRIAL_BLOCKED_DURATION_HOURS).")
    block_parser.add_argument("--reason", default="operator")

    unblock_parser = subparsers.add_parser("unblock", help="Lift a block immediately.")
    unblock_parser.add_argument("fingerprint")

    subparsers.add_parser("prune-behavior", help="Delete behavior events outside the retention window.")
    subparsers.add_parser("optimizer-batch", help="Run one prompt optimizer batch update.")
    return parser


def run(args: argparse.Namespace) -> int:
    if args.command == "init-db":
        database.init_db()
        return 0

    if args.command == "prune-behavior":
        removed = get_behavior_store().evict()
        print(f"Removed {removed} behavior events.")
        return 0

    if args.command == "optimizer-batch":
        result = get_prompt_optimizer().run_batch_update()
        spawned = ", ".join(result.spawned) or "-"
        print(f"Applied {result.applied} interactions; spawned variants: {spawned}")
        return 0

    manager = get_trial_manager()
    if args.command == "show":
        ledger = manager.get_ledger(args.fingerprint)
        if ledger is None:
            print(f"No trial ledger for {args.fingerprint}.")
            return 1
    elif args.command == "reset":
        ledger = manager.reset(args.fingerprint, preserve_actions=args.keep_actions, reason=args.reason)
    elif args.command == "block":
        ledger = manager.block(args.fingerprint, reason=args.reason, duration_hours=args.hours)
    else:
        ledger = manager.clear_block(args.fingerprint)
    print(_format_ledger(ledger))
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    return run(args)


if __name__ == "__main__":
    raise SystemExit(main())
