"""Tests for the Celery migration task."""

from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from orgvault.models.encrypted_records import EncryptedRecord
from orgvault.tasks import celery_app
from orgvault.tasks.migration import _migrate, migrate_legacy_batch

from conftest import ORG_A, ORG_B


def test_task_registered():
    assert "orgvault.tasks.migration.migrate_legacy_batch" in celery_app.tasks
    assert migrate_legacy_batch.name == "orgvault.tasks.migration.migrate_legacy_batch"


@pytest.mark.asyncio
async def test_migrate_runs_batch_and_releases_resources(
    gateway, fake_kms, seed_legacy, session_factory
):
    await seed_legacy(["a", "b"], org_id=ORG_A)
    await seed_legacy(["c"], org_id=ORG_B)
    close_db = AsyncMock()

    with patch("orgvault.dependencies.build_gateway", return_value=gateway), patch(
        "orgvault.database.async_session_factory", session_factory
    ), patch("orgvault.database.close_db", close_db):
        result = await _migrate(offset=0, limit=None, dry_run=False, org_id=ORG_A)

    assert result["migrated"] == 2
    assert result["total"] == 2
    assert fake_kms.closed is True
    close_db.assert_awaited_once()

    async with session_factory() as session:
        rows = (await session.execute(select(EncryptedRecord))).scalars().all()
    assert {r.org_id: r.encryption_method for r in rows if r.org_id == ORG_B} == {
        ORG_B: "legacy"
    }


@pytest.mark.asyncio
async def test_migrate_releases_resources_on_error(gateway, fake_kms, session_factory):
    close_db = AsyncMock()

    with patch("orgvault.dependencies.build_gateway", return_value=gateway), patch(
        "orgvault.database.async_session_factory", session_factory
    ), patch("orgvault.database.close_db", close_db):
        with pytest.raises(ValueError):
            await _migrate(offset=-1, limit=10, dry_run=False, org_id=None)

    assert fake_kms.closed is True
    close_db.assert_awaited_once()
