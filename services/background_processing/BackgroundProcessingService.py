"""Background processing service.

Holds a FIFO queue of mail package ids whose AI classification is still
pending and drains it with a single worker task: one package reaches
readyForSurvey or failed before the next one starts.

Only the OCR bridge is durable. Queue membership and statuses live in memory;
recover_pending() rebuilds the queue from disk after a restart.
"""

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Callable

from services.background_processing.StatusChannel import StatusChannel
from services.mail_processing.MailProcessingService import MailProcessingService
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import ProcessingFailedError
from shared.models.mail import AsyncProcessingState, BackgroundProcessingStatus, ProcessingResult
from shared.storage.LocalStore import LocalStore


class BackgroundProcessingService:
    def __init__(
        self,
        helper_config: HelperConfig,
        mail_processing_service: MailProcessingService,
        store: LocalStore,
        status_channel: StatusChannel | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._mail_processing_service = mail_processing_service
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.status_channel = status_channel or StatusChannel(helper_config, clock=self._clock)

        self._queue: deque[str] = deque()
        self._current: str | None = None
        self._drain_task: asyncio.Task | None = None
        self.is_processing = False

    ##########################################
    ################ GETTER ##################
    ##########################################

    def get_status(self, mail_package_id: str) -> BackgroundProcessingStatus:
        return self.status_channel.get(mail_package_id)

    def get_queue(self) -> list[str]:
        """Ids waiting to be processed, in processing order (excludes the one in flight)."""
        return list(self._queue)

    def get_current(self) -> str | None:
        return self._current

    ##########################################
    ############### QUEUEING #################
    ##########################################

    async def enqueue(self, mail_package_id: str) -> bool:
        """Append a package to the queue and start draining if idle.

        The OCR bridge record must already exist; otherwise the package fails
        when it is dequeued.

        Args:
            mail_package_id (str): Package to analyse.

        Returns:
            bool: False if the id was already queued or in flight.
        """
        if mail_package_id in self._queue or mail_package_id == self._current:
            self.logging.debug("Mail package %s is already queued.", mail_package_id)
            return False

        self.logging.info("Queueing mail package %s for background processing", mail_package_id)
        self._queue.append(mail_package_id)
        await self.status_channel.set_status(mail_package_id, BackgroundProcessingStatus.QUEUED)
        self._start_processing_if_needed()
        return True

    async def dequeue(self, mail_package_id: str) -> None:
        """Drop a package from the queue and forget its status.

        A package already in flight is not interrupted; its network calls run
        to completion and record their terminal status.
        """
        if mail_package_id in self._queue:
            self._queue.remove(mail_package_id)
        await self.status_channel.clear(mail_package_id)

    async def requeue(self, mail_package_id: str) -> bool:
        """Retry a package explicitly, typically after it failed.

        Raises:
            ProcessingFailedError: If the OCR bridge record no longer exists, so a retry cannot succeed.
        """
        if await self._store.load_ocr_bridge(mail_package_id) is None:
            raise ProcessingFailedError(f"No OCR data found for package {mail_package_id}")
        self.logging.info("Requeueing mail package %s (was %s)", mail_package_id, self.get_status(mail_package_id).value)
        return await self.enqueue(mail_package_id)

    async def recover_pending(self) -> list[str]:
        """Re-enqueue packages left in scanning state that still have OCR data on disk.

        Returns:
            list[str]: The ids that were enqueued, oldest first.
        """
        bridge_ids = await self._store.list_ocr_bridge_ids()
        packages = await self._store.list_packages()
        pending = sorted(
            (
                p for p in packages
                if p.async_processing_state == AsyncProcessingState.SCANNING and p.id in bridge_ids
            ),
            key=lambda p: p.created_at,
        )
        recovered: list[str] = []
        for package in pending:
            if await self.enqueue(package.id):
                recovered.append(package.id)
        if recovered:
            self.logging.info("Recovered %d pending mail package(s) for background processing.", len(recovered))
        return recovered

    async def wait_until_idle(self) -> None:
        """Wait until the queue is empty and no package is in flight."""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.shield(self._drain_task)

    async def close(self) -> None:
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        await self.status_channel.close()

    ##########################################
    ################ DRAINING ################
    ##########################################

    def _start_processing_if_needed(self) -> None:
        if self.is_processing:
            return
        self.is_processing = True
        self._drain_task = asyncio.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        try:
            while self._queue:
                self._current = self._queue.popleft()
                await self._process_mail_package(self._current)
                self._current = None
        finally:
            self._current = None
            self.is_processing = False

    async def _process_mail_package(self, mail_package_id: str) -> None:
        self.logging.info("Starting background processing for mail package %s", mail_package_id)
        await self.status_channel.set_status(mail_package_id, BackgroundProcessingStatus.PROCESSING)

        try:
            ocr_data = await self._store.load_ocr_bridge(mail_package_id)
            if ocr_data is None:
                raise ProcessingFailedError(f"No OCR data found for package {mail_package_id}")

            result = await self._mail_processing_service.complete_analysis(
                mail_package_id=mail_package_id,
                ocr_texts=ocr_data.ocr_texts,
                timestamp=ocr_data.timestamp,
            )
            await self._apply_processing_result(mail_package_id, result)
            await self._store.delete_ocr_bridge(mail_package_id)
        except Exception as e:
            self.logging.error("Background processing failed for package %s: %s", mail_package_id, e)
            await self.status_channel.set_status(mail_package_id, BackgroundProcessingStatus.FAILED)
            return

        await self.status_channel.set_status(mail_package_id, BackgroundProcessingStatus.READY_FOR_SURVEY)
        self.logging.info("Background processing completed for package %s", mail_package_id)

    async def _apply_processing_result(self, mail_package_id: str, result: ProcessingResult) -> None:
        """Merge the classification into the stored package, keeping everything it does not cover."""
        package = await self._store.get_package(mail_package_id)
        if package is None:
            self.logging.warning("Could not find mail package %s to store its processing result.", mail_package_id)
            return

        now = self._clock()
        await self._store.save_package(
            package.model_copy(
                update={
                    "industry": result.industry,
                    "brand_name": result.brand_name,
                    "primary_offer": result.primary_offer,
                    "async_processing_state": AsyncProcessingState.READY_FOR_SURVEY,
                    "processing_completed_at": now,
                    "survey_completed_at": None,
                    "updated_at": now,
                }
            )
        )
