"""Out-of-band legacy-to-KMS migration task."""

import asyncio
import logging
from typing import Optional

from orgvault.tasks import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="orgvault.tasks.migration.migrate_legacy_batch")
def migrate_legacy_batch(
    offset: int = 0,
    limit: Optional[int] = None,
    dry_run: bool = False,
    org_id: Optional[str] = None,
):
    """
    Migrate one batch of legacy records.

    Safe to enqueue repeatedly or concurrently with other runners: the
    per-record flip is conditional, so a record is migrated at most once.
    """
    return asyncio.run(_migrate(offset, limit, dry_run, org_id))


async def _migrate(offset: int, limit: Optional[int], dry_run: bool, org_id: Optional[str]):
    from orgvault.config import get_settings
    from orgvault.database import async_session_factory, close_db
    from orgvault.dependencies import build_gateway
    from orgvault.services.migration import MigrationProcessor

    settings = get_settings()
    gateway = build_gateway(settings)
    processor = MigrationProcessor.from_settings(gateway, async_session_factory, settings)

    try:
        result = await processor.run_batch(
            offset=offset,
            limit=limit or settings.MIGRATION_BATCH_SIZE,
            dry_run=dry_run,
            org_id=org_id,
        )
    finally:
        await gateway.kms_client.close()
        # Pooled connections are bound to this event loop
        await close_db()

    logger.info(
        f"Migration task finished: migrated={result.migrated} "
        f"failed={result.failed} skipped={result.skipped} not_started={result.not_started}"
    )
    return result.as_dict()
