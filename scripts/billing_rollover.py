from __future__ import annotations

import argparse
import asyncio
import sys

from agentgate.core.errors import LedgerUnavailableError
from agentgate.core.logging import configure_logging
from agentgate.services.ledger import get_ledger_store
from agentgate.services.quota import QuotaPolicy


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reset monthly spend for workspaces at the start of a billing period."
    )
    parser.add_argument(
        "--workspace",
        action="append",
        required=True,
        help="Workspace id; repeat for several workspaces",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    policy = QuotaPolicy(get_ledger_store())
    for workspace_id in args.workspace:
        entry = await policy.rollover_period(workspace_id)
        print(f"rolled_over workspace_id={workspace_id} tier={entry.tier} spent={entry.spent_this_period}")
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    try:
        return asyncio.run(_run(args))
    except LedgerUnavailableError as exc:
        print(f"LEDGER_UNAVAILABLE: {exc}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
