"""Background runner entry point.

Resumes analysis for one user partition after a restart: migrates legacy
absolute image paths, re-enqueues every package still in scanning state whose
OCR data survived on disk, and drains the queue once.

Usage:
    MAIL_USER_ID=<user> python -m services.background_processing.background_runner
"""

import asyncio

from services.background_processing.BackgroundProcessingService import BackgroundProcessingService
from services.mail_processing.MailProcessingService import MailProcessingService
from shared.clients.backend.BackendClientManager import BackendClientManager
from shared.clients.ocr.OCRClientManager import OCRClientManager
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import setup_logging
from shared.models.mail import BackgroundProcessingStatus
from shared.storage.LocalStore import LocalStore


async def run_recovery(
    helper_config: HelperConfig,
    background_service: BackgroundProcessingService,
    store: LocalStore,
) -> dict[str, BackgroundProcessingStatus]:
    """Migrate, recover and drain one partition.

    Returns:
        dict[str, BackgroundProcessingStatus]: Terminal status of every recovered package.
    """
    logger = helper_config.get_logger()
    await store.migrate_image_paths()
    recovered = await background_service.recover_pending()
    if not recovered:
        logger.info("No pending mail packages for user '%s'.", store.user_id)
        return {}

    await background_service.wait_until_idle()
    results = {package_id: background_service.get_status(package_id) for package_id in recovered}
    failed = [package_id for package_id, status in results.items() if status.is_failed]
    logger.info(
        "Recovery finished for user '%s': %d ready for survey, %d failed.",
        store.user_id, len(results) - len(failed), len(failed),
    )
    return results


async def main() -> None:
    """Run the recovery pass for the partition named by MAIL_USER_ID."""
    logger = setup_logging()
    config = HelperConfig(logger=logger)

    store = LocalStore(helper_config=config, user_id=config.get_string_val("MAIL_USER_ID", default="anonymous"))
    backend_client = BackendClientManager(helper_config=config).get_client()
    ocr_client = OCRClientManager(helper_config=config).get_client()

    try:
        # the backend is required, without it no package can be analysed
        try:
            await backend_client.boot()
        except Exception as e:
            logger.error(f"Error booting backend client {backend_client.get_engine_name()}: {e}. Aborting.")
            return

        mail_service = MailProcessingService(
            helper_config=config,
            backend_client=backend_client,
            ocr_client=ocr_client,
            store=store,
        )
        background_service = BackgroundProcessingService(
            helper_config=config,
            mail_processing_service=mail_service,
            store=store,
        )
        try:
            await run_recovery(config, background_service, store)
        finally:
            await background_service.close()
    finally:
        await backend_client.close()


if __name__ == "__main__":
    asyncio.run(main())
