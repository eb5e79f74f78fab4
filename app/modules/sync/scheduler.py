import asyncio
import logging
from app.config import settings
from app.database.supabase_client import SupabaseClient
from app.modules.sync.service import SyncService

logger = logging.getLogger(__name__)


def run_auto_sync():
    """One sweep over stale deployments of all tenants"""
    service = SyncService(SupabaseClient.get_service_client())
    summary = service.auto_sync()
    if summary.total_checked or summary.errors:
        logger.info(
            f"Auto-sync checked {summary.total_checked} deployment(s), "
            f"{summary.deleted_externally} deleted externally, {summary.errors} error(s)"
        )
    else:
        logger.debug("No deployments due for sync")
    return summary


async def sync_scheduler_loop():
    """Background task that periodically reconciles deployments with AWS"""
    while True:
        try:
            await asyncio.to_thread(run_auto_sync)
        except Exception as e:
            logger.error(f"Error in sync scheduler loop: {str(e)}")

        await asyncio.sleep(settings.sync_interval_seconds)
