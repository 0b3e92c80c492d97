#!/usr/bin/env python3
"""
orgvault-migrate - re-encrypt legacy records under org-scoped KMS keys

Usage:
    orgvault-migrate --dry-run                 # Verify one batch, write nothing
    orgvault-migrate --offset 200 --limit 100  # Migrate one batch
    orgvault-migrate --all                     # Migrate until no legacy rows remain
    orgvault-migrate --all --org org_01H123    # Migrate a single organization
    orgvault-migrate --check --org org_01H123  # Test the KMS connection
    orgvault-migrate --cleanup --limit 500     # Drop verified legacy copies

Exit codes: 0 when no record failed, 1 when any record failed or the KMS
check failed, 2 on invalid arguments, 130 when stopped by a signal or the
job timeout before the selection was exhausted.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orgvault.config import Settings, get_settings
from orgvault.services import records
from orgvault.services.encryption_gateway import EncryptionGateway
from orgvault.services.key_context import is_valid_org_id
from orgvault.services.migration import MigrationProcessor

logger = logging.getLogger("orgvault.cli")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orgvault-migrate",
        description="Re-encrypt legacy records under organization-scoped KMS keys",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decrypt, re-encrypt and verify without writing anything",
    )
    parser.add_argument("--offset", type=int, default=0, help="Skip this many legacy records")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.MIGRATION_BATCH_SIZE,
        help="Batch size (default: %(default)s)",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Keep running batches until no legacy records remain",
    )
    parser.add_argument("--org", metavar="ORG_ID", help="Only migrate this organization's records")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.MIGRATION_CONCURRENCY,
        help="Records processed in parallel, 1-10 (default: %(default)s)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Round-trip a probe value through the KMS and exit",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Clear legacy ciphertexts of migrated records after verifying them",
    )
    return parser


def _validate(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    if args.offset < 0:
        parser.error("--offset must be >= 0")
    if args.limit < 1:
        parser.error("--limit must be >= 1")
    if not 1 <= args.concurrency <= 10:
        parser.error("--concurrency must be between 1 and 10")
    if args.org is not None and not is_valid_org_id(args.org):
        parser.error(f"--org is not a valid organization id: {args.org}")
    if args.cleanup and (args.dry_run or args.all):
        parser.error("--cleanup cannot be combined with --dry-run or --all")


async def check_kms(gateway: EncryptionGateway, org_id: Optional[str]) -> int:
    if not org_id:
        logger.error("--check needs --org or KMS_HEALTHCHECK_ORG_ID")
        return EXIT_USAGE
    if await gateway.kms_client.check_connection(org_id):
        print(f"KMS connection OK for {org_id}")
        return EXIT_OK
    print(f"KMS connection FAILED for {org_id}")
    return EXIT_FAILURES


async def cleanup_legacy(
    args: argparse.Namespace,
    gateway: EncryptionGateway,
    session_factory: async_sessionmaker[AsyncSession],
) -> int:
    async with session_factory() as session:
        cleaned = await records.cleanup_legacy_ciphertext(
            session, gateway, limit=args.limit, org_id=args.org
        )
        await session.commit()
    print(json.dumps({"cleaned": cleaned, "limit": args.limit, "org_id": args.org}, indent=2))
    return EXIT_OK


async def run_migration(
    args: argparse.Namespace,
    settings: Settings,
    gateway: EncryptionGateway,
    session_factory: async_sessionmaker[AsyncSession],
) -> int:
    """Run the requested batch (or batches) and return the process exit code."""
    if args.check:
        return await check_kms(gateway, args.org or settings.KMS_HEALTHCHECK_ORG_ID)
    if args.cleanup:
        return await cleanup_legacy(args, gateway, session_factory)

    processor = MigrationProcessor(
        gateway,
        session_factory,
        concurrency=args.concurrency,
        max_retries=settings.KMS_MAX_RETRIES,
        base_delay=settings.KMS_RETRY_BASE_DELAY,
        max_delay=settings.KMS_RETRY_MAX_DELAY,
        call_timeout=settings.KMS_TIMEOUT_SECONDS,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, processor.stop)
    timeout_handle = loop.call_later(settings.MIGRATION_JOB_TIMEOUT_SECONDS, processor.stop)

    try:
        if args.all:
            result = await processor.run_all(
                batch_size=args.limit,
                dry_run=args.dry_run,
                org_id=args.org,
                offset=args.offset,
            )
        else:
            result = await processor.run_batch(
                offset=args.offset,
                limit=args.limit,
                dry_run=args.dry_run,
                org_id=args.org,
            )
    finally:
        timeout_handle.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    print(json.dumps(result.as_dict(), indent=2))

    if result.failed:
        return EXIT_FAILURES
    if result.interrupted or processor.stopping:
        return EXIT_INTERRUPTED
    return EXIT_OK


async def _main(args: argparse.Namespace, settings: Settings) -> int:
    from orgvault.database import async_session_factory, close_db
    from orgvault.dependencies import build_gateway

    gateway = build_gateway(settings)
    try:
        return await run_migration(args, settings, gateway, async_session_factory)
    finally:
        await gateway.kms_client.close()
        await close_db()


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    parser = build_parser(settings)
    args = parser.parse_args(argv)
    _validate(parser, args)

    if not settings.KMS_MODE_ENABLED and not (args.check or args.cleanup):
        logger.warning("KMS_MODE_ENABLED is off; migrated records are still read through the KMS")

    return asyncio.run(_main(args, settings))


if __name__ == "__main__":
    sys.exit(main())
