"""Worker: purge execution records older than ``execution_record_retention_days``."""
from __future__ import annotations

from datetime import datetime, timedelta

from backend_common.worker import TaskFn

from webhook_service.storage.base import DataStore, Lt
from webhook_service.storage.fieldmap import column

TABLE = "execution_records"


def make_execution_record_purge(store: DataStore, retention_days: int) -> TaskFn:
    async def execution_record_purge(now: datetime) -> str | None:
        cutoff = now - timedelta(days=retention_days)
        # Runs across all tenants, so it bypasses the tenant gateway.
        purged = await store.delete(TABLE, {column(TABLE, "started_at"): Lt(cutoff)})
        return f"purged={purged}" if purged else None

    return execution_record_purge
