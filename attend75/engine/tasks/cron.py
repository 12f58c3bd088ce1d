import logging

from ..models.sync_models import SessionState
from ..services.sync_coordinator import SyncCoordinator

logger = logging.getLogger(__name__)


async def retry_pending_writes_task(coordinator: SyncCoordinator):
    """
    Runs periodically and re-sends writes that could not reach the remote
    store. Does nothing for guests or when the queue is empty.
    """
    if coordinator.user_id is None or not coordinator.pending:
        return
    if coordinator.state not in (SessionState.OFFLINE, SessionState.SYNCED):
        return

    logger.info(f"Running retry_pending_writes_task for {len(coordinator.pending)} writes...")
    try:
        result = await coordinator.retry_pending()
        if result.ok:
            logger.info("Pending writes delivered; session is synced.")
        else:
            logger.warning(f"Pending writes still undelivered: {result.error_message}")
    except Exception as e:
        logger.error(f"retry_pending_writes_task failed: {e}", exc_info=True)


async def keep_realtime_alive_task(coordinator: SyncCoordinator):
    """
    Re-establishes a dropped real-time subscription. After a reconnect the
    ledger may have missed changes, so a fresh pull follows.
    """
    if coordinator.user_id is None or coordinator.realtime_connected:
        return

    try:
        if await coordinator.ensure_realtime():
            logger.info("Real-time subscription restored; refreshing the ledger.")
            await coordinator.initial_pull()
        else:
            logger.warning("Real-time subscription is still down.")
    except Exception as e:
        logger.error(f"keep_realtime_alive_task failed: {e}", exc_info=True)
