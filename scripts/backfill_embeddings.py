#!/usr/bin/env python3
"""
Backfill Embeddings Script

Operator entry point for the index maintainer: embeds every live note that
lacks a vector, with the configured batch pacing and error cooldown.

Usage:
    $ python scripts/backfill_embeddings.py                 # sweep all owners
    $ python scripts/backfill_embeddings.py --owner U1      # one owner
    $ python scripts/backfill_embeddings.py --dry-run       # counts only
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Required for direct script execution without package installation
sys.path.append(os.path.join(os.path.dirname(__file__), "../src"))

from clipnotes.core.database import dispose_engine, get_session_factory
from clipnotes.core.logging import setup_logging
from clipnotes.repositories.notes import note_repository
from clipnotes.services.ai import EmbeddingClient
from clipnotes.services.embeddings import BackfillReport, IndexMaintainer


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill missing note embeddings")
    parser.add_argument("--owner", help="Only backfill this owner id")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print embedding coverage without calling the provider",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    return parser.parse_args(argv)


async def print_status(maintainer: IndexMaintainer, owner: str | None) -> None:
    factory = get_session_factory()
    async with factory() as session:
        owners = [owner] if owner else await note_repository.owners_missing_embedding(session)
        if not owners:
            print("All live notes have embeddings.")
            return
        for owner_id in owners:
            status = await maintainer.status(session, owner_id)
            print(
                f"{owner_id}: {status.with_embedding}/{status.total_live_notes} embedded, "
                f"{status.without_embedding} missing "
                f"(~${status.estimated_cost:.5f})"
            )


def print_reports(reports: list[BackfillReport]) -> None:
    for report in reports:
        print(
            f"{report.owner_id}: {report.processed}/{report.total} embedded "
            f"({report.skipped} skipped, {report.failed} failed)"
        )
    if not reports:
        print("Nothing to backfill.")


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    client = EmbeddingClient()
    maintainer = IndexMaintainer(get_session_factory(), client)
    try:
        if args.dry_run:
            await print_status(maintainer, args.owner)
            return 0
        if args.owner:
            reports = [await maintainer.backfill_owner(args.owner)]
        else:
            reports = await maintainer.sweep()
        print_reports(reports)
        return 1 if any(report.failed for report in reports) else 0
    finally:
        await client.aclose()
        await dispose_engine()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
