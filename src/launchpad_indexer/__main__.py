"""Command line entry point.

Usage:
    python -m launchpad_indexer run
    python -m launchpad_indexer run --token-id 42 --skip-health-check
    python -m launchpad_indexer config
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from redis.asyncio import Redis

from launchpad_indexer.chain.client import ChainClient
from launchpad_indexer.chain.retry import RetryPolicy
from launchpad_indexer.config import Settings, get_settings
from launchpad_indexer.orchestrator import IndexerError, Orchestrator, RunReport
from launchpad_indexer.storage.database import DatabaseManager

logger = logging.getLogger("launchpad_indexer")

EXIT_OK = 0
EXIT_STRUCTURAL_FAILURE = 1


def build_clients(settings: Settings, redis: Redis | None) -> dict[int, ChainClient]:
    policy = RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        base_delay=settings.retry.base_delay_seconds,
        max_delay=settings.retry.max_delay_seconds,
        exponential=settings.retry.exponential,
    )
    return {
        chain_id: ChainClient(
            chain_id,
            url,
            retry_policy=policy,
            redis=redis,
            max_requests_per_second=settings.chains.max_requests_per_second,
            request_timeout=settings.chains.request_timeout_seconds,
            timestamp_cache_size=settings.scanner.timestamp_cache_size,
            header_delay_seconds=settings.scanner.header_delay_seconds,
        )
        for chain_id, url in settings.chains.rpc_urls.items()
    }


async def run_once(settings: Settings) -> RunReport:
    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    db = DatabaseManager(settings.database.url)
    clients = build_clients(settings, redis)
    try:
        return await Orchestrator(settings, db=db, clients=clients).run()
    finally:
        for client in clients.values():
            await client.aclose()
        await db.dispose_async()
        if redis is not None:
            await redis.aclose()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="launchpad_indexer",
        description="Index launchpad token activity into ledgers, candles and summaries",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Perform one scan, reconcile and aggregate run")
    run.add_argument("--token-id", type=int, default=None, help="Only process this token")
    run.add_argument("--skip-health-check", action="store_true", help="Do not probe chains first")

    sub.add_parser("config", help="Print the effective settings with secrets redacted")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "config":
        print(json.dumps(settings.redacted_summary(), indent=2, sort_keys=True))
        return EXIT_OK

    if args.token_id is not None:
        settings.scanner.token_id = args.token_id
    if args.skip_health_check:
        settings.skip_health_check = True

    try:
        report = asyncio.run(run_once(settings))
    except IndexerError as e:
        logger.error("Run aborted: %s", e)
        return EXIT_STRUCTURAL_FAILURE

    # Per-chain errors do not fail the run.
    for chain_id, errors in sorted(report.errors.items()):
        logger.error("Chain %d: %s", chain_id, "; ".join(errors))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
