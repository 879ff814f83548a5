import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import Settings
from .errors import VaultError
from .manager import ReconcileReport, StorageManager

logger = logging.getLogger("mydrive.maintenance")

TEMP_FILE_MAX_AGE_SECONDS = 3600


def run_reconcile(manager: StorageManager, grace_seconds: float) -> ReconcileReport:
    try:
        return manager.reconcile(grace_seconds=grace_seconds)
    except VaultError as error:
        logger.error("reconcile_failed kind=%s error=%s", error.kind, error.message)
        return ReconcileReport()


def run_temp_cleanup(manager: StorageManager) -> int:
    removed = manager.blob_store.cleanup_temp_files(TEMP_FILE_MAX_AGE_SECONDS)
    if removed:
        logger.info("temp_cleanup_completed removed=%d", removed)
    return removed


def start_scheduler(manager: StorageManager, settings: Settings) -> BackgroundScheduler:
    """Schedule the orphan sweep and temp-file cleanup in a daemon thread."""

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_reconcile,
        args=(manager, settings.orphan_grace_seconds),
        trigger="interval",
        minutes=max(1, settings.reconcile_interval_minutes),
        id="reconcile_storage",
        name="Reconcile blob directory with the metadata index",
        replace_existing=True,
    )
    scheduler.add_job(
        func=run_temp_cleanup,
        args=(manager,),
        trigger="interval",
        hours=1,
        id="cleanup_temp_files",
        name="Clean up temporary files",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False) if scheduler.running else None)
    logger.info(
        "scheduler_started reconcile_interval_minutes=%d",
        settings.reconcile_interval_minutes,
    )
    return scheduler
