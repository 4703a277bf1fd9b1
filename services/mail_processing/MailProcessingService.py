"""Mail processing service.

Turns a batch of scanned pages into an uploaded, OCR'd mail package, runs the
backend's AI classification on its combined text, and folds the user's survey
answers back into the package.

The first page is always uploaded alone: its response carries the package id
that every following upload needs.
"""

import base64
import io
from datetime import datetime, timezone
from typing import Callable

from PIL import Image

from shared.clients.backend.BackendClientInterface import BackendClientInterface
from shared.clients.backend.models.PackageProcessing import ProcessPackageRequest
from shared.clients.backend.models.PackageUpdate import UpdatePackageRequest
from shared.clients.backend.models.ScanUpload import ScanUploadMetadata, ScanUploadRequest
from shared.clients.ocr.OCRClientInterface import OCRClientInterface
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import OcrProcessingFailedError, ProcessingFailedError, UpdateFailedError, UploadFailedError
from shared.models.mail import (
    AsyncProcessingState,
    MailPackage,
    MailPackageOcrData,
    MailPackageSurvey,
    ProcessingResult,
    ProcessingStatus,
)
from shared.storage.LocalStore import JPEG_QUALITY, LocalStore, scan_filename


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """ISO-8601 capture timestamp in UTC, e.g. "2024-01-01T00:00:00Z"."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def combine_ocr_texts(ocr_texts: list[str]) -> str:
    """Join page texts in order, each under an "--- Image k ---" header.

    Args:
        ocr_texts (list[str]): Page texts in capture order.

    Returns:
        str: The composite document sent to the classifier.
    """
    return "".join(f"--- Image {index} ---\n{text}\n\n" for index, text in enumerate(ocr_texts, start=1))


def encode_jpeg(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    rgb = image if image.mode in ("RGB", "L") else image.convert("RGB")
    rgb.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    return buffer.getvalue()


class MailProcessingService:
    """Drives the per-package pipeline: upload, OCR, analysis and survey update."""

    def __init__(
        self,
        helper_config: HelperConfig,
        backend_client: BackendClientInterface,
        ocr_client: OCRClientInterface,
        store: LocalStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.logging = helper_config.get_logger()
        self._backend_client = backend_client
        self._ocr_client = ocr_client
        self._store = store
        self._clock = clock

    @property
    def store(self) -> LocalStore:
        return self._store

    ##########################################
    ############ PACKAGE CREATION ############
    ##########################################

    async def create_package(self, images: list[Image.Image], timestamp: str | None = None) -> MailPackage:
        """Upload and OCR all pages of a new package and store it in scanning state.

        Does not wait for classification and does not enqueue the package; the
        caller hands the returned id to the background queue.

        Args:
            images (list[Image.Image]): Scanned pages in capture order.
            timestamp (str | None): Capture timestamp; defaults to now.

        Returns:
            MailPackage: The stored package with async_processing_state = scanning.

        Raises:
            ProcessingFailedError: If images is empty, OCR fails for any page, or no package id is returned.
            UploadFailedError: If any page upload fails.
        """
        if not images:
            raise ProcessingFailedError("No images to process")

        timestamp = timestamp or format_timestamp(self._clock())
        self.logging.info("Starting new mail package creation with %d image(s)...", len(images))

        ocr_texts: list[str] = []
        try:
            # first page creates the package on the backend
            first_text, mail_package_id = await self.process_and_upload_image(
                image=images[0],
                mail_package_id=None,
                image_sequence=1,
                timestamp=timestamp,
            )
            ocr_texts.append(first_text)
            if not mail_package_id:
                raise ProcessingFailedError("Failed to extract mail package ID from first upload")
            self.logging.info("First image uploaded. Mail package ID: %s", mail_package_id)

            for image_sequence, image in enumerate(images[1:], start=2):
                text, _ = await self.process_and_upload_image(
                    image=image,
                    mail_package_id=mail_package_id,
                    image_sequence=image_sequence,
                    timestamp=timestamp,
                )
                ocr_texts.append(text)
        except OcrProcessingFailedError as e:
            raise ProcessingFailedError(str(e)) from e

        image_paths = await self._store.save_scans(images=images, mail_package_id=mail_package_id, timestamp=timestamp)
        await self._store.save_ocr_bridge(
            MailPackageOcrData(mail_package_id=mail_package_id, ocr_texts=ocr_texts, timestamp=timestamp)
        )
        self.logging.info("OCR texts stored for background processing: %d text(s)", len(ocr_texts))

        now = self._clock()
        package = MailPackage(
            id=mail_package_id,
            package_name=f"Mail Package {timestamp}",
            package_description=f"Mail package processed on {timestamp}",
            status="processing",
            points_awarded=0,
            is_approved=False,
            processing_status=ProcessingStatus.PROCESSING,
            async_processing_state=AsyncProcessingState.SCANNING,
            created_at=now,
            updated_at=now,
            processing_started_at=now,
            image_paths=image_paths,
        )
        await self._store.save_package(package)
        return package

    async def process_and_upload_image(
        self,
        image: Image.Image,
        mail_package_id: str | None,
        image_sequence: int,
        timestamp: str,
    ) -> tuple[str, str | None]:
        """OCR one page and upload it.

        Args:
            image (Image.Image): The page.
            mail_package_id (str | None): Package id, or None for the first page of a new package.
            image_sequence (int): 1-based position of the page.
            timestamp (str): Capture timestamp used in the file name.

        Returns:
            tuple[str, str | None]: The OCR text and the package id (newly assigned for the first page).

        Raises:
            OcrProcessingFailedError: If text extraction fails.
            UploadFailedError: If the upload fails or is rejected.
        """
        ocr_text = await self._ocr_client.do_extract_text(image)
        self.logging.debug("OCR completed for image %d: %d characters", image_sequence, len(ocr_text))

        request = ScanUploadRequest(
            mail_package_id=mail_package_id,
            document_type="scan",
            image_sequence=image_sequence,
            file_data=base64.b64encode(encode_jpeg(image)).decode("ascii"),
            filename=scan_filename(timestamp, image_sequence),
            mime_type="image/jpeg",
            metadata=ScanUploadMetadata(timestamp=timestamp, sequence=str(image_sequence)),
        )
        self.logging.info("Uploading image %d with package ID: %s", image_sequence, mail_package_id or "NEW")
        response = await self._backend_client.do_upload_scan(request)
        if not response.success:
            raise UploadFailedError(response.message or f"upload of image {image_sequence} rejected")

        if mail_package_id is None and response.upload_type == "scan" and response.scan:
            mail_package_id = response.scan.mailpack_id
        return ocr_text, mail_package_id

    ##########################################
    ############### ANALYSIS #################
    ##########################################

    async def complete_analysis(self, mail_package_id: str, ocr_texts: list[str], timestamp: str) -> ProcessingResult:
        """Upload the combined OCR text of a package and classify it.

        Args:
            mail_package_id (str): Backend id of the package.
            ocr_texts (list[str]): Page texts in capture order.
            timestamp (str): Capture timestamp of the package.

        Returns:
            ProcessingResult: The backend's classification.

        Raises:
            UploadFailedError: If the text upload fails, or on transport errors.
            ProcessingFailedError: If the backend rejects the classification request.
        """
        combined_text = combine_ocr_texts(ocr_texts)
        self.logging.info(
            "Completing mail package %s: %d text(s), %d characters combined",
            mail_package_id, len(ocr_texts), len(combined_text),
        )

        upload = ScanUploadRequest(
            mail_package_id=mail_package_id,
            document_type="ocr_text",
            file_data=base64.b64encode(combined_text.encode("utf-8")).decode("ascii"),
            filename=f"{timestamp}_ocr.txt",
            mime_type="text/plain",
            metadata=ScanUploadMetadata(type="combined_ocr", image_count=str(len(ocr_texts))),
        )
        upload_response = await self._backend_client.do_upload_scan(upload)
        if not upload_response.success:
            raise UploadFailedError(upload_response.message or "combined OCR text rejected")

        processing_response = await self._backend_client.do_process_package(
            mail_package_id,
            ProcessPackageRequest(
                input_text=combined_text,
                processing_notes=f"Combined OCR text from {len(ocr_texts)} images",
            ),
        )
        if not processing_response.success or processing_response.processing_result is None:
            raise ProcessingFailedError("AI processing failed")

        result = processing_response.processing_result
        self.logging.info(
            "AI processing completed for %s: industry=%s, brand=%s, offer=%s",
            mail_package_id, result.industry, result.brand_name or "None", result.primary_offer or "None",
        )
        return result

    ##########################################
    ################ SURVEY ##################
    ##########################################

    async def apply_survey(
        self,
        mail_package_id: str,
        survey: MailPackageSurvey,
        processing_result: ProcessingResult | None = None,
    ) -> MailPackage:
        """Send survey answers to the backend and store the completed package.

        Args:
            mail_package_id (str): Backend id of the package.
            survey (MailPackageSurvey): The user's answers.
            processing_result (ProcessingResult | None): Classification shown to the user;
                decides whether the recipient answer is mandatory.

        Returns:
            MailPackage: The package with processing_status = completed and is_approved = True.

        Raises:
            SurveyValidationError: If the answers are incomplete or invalid.
            UpdateFailedError: If the backend update fails.
        """
        survey = survey.model_copy(update={"mail_package_id": mail_package_id})
        survey.validate_answers(
            require_recipient=processing_result.requires_recipient_answer() if processing_result else False
        )

        # classification the survey does not echo is taken from the analysed package
        local = await self._store.get_package(mail_package_id)
        if local is not None:
            survey = survey.model_copy(
                update={
                    "industry": survey.industry or local.industry,
                    "brand_name": survey.brand_name or local.brand_name,
                    "primary_offer": survey.primary_offer or local.primary_offer,
                }
            )

        self.logging.info("Updating mail package %s with survey results", mail_package_id)
        request = UpdatePackageRequest(
            brand_name=survey.brand_name or "Unknown",
            industry=survey.industry,
            company_validated=True,
            response_intention=survey.intention_answer,
            name_check=survey.recipient_answer or "unknown",
            notes="Survey completed",
            status="completed",
            is_approved=True,
            processing_notes="Survey results processed",
        )
        response = await self._backend_client.do_update_package(mail_package_id, request)
        if not response.success:
            raise UpdateFailedError("Failed to update mail package")

        completed = self._merge_updated_package(mail_package_id, local, response.mail_package)
        await self._store.save_package(completed)
        self.logging.info("Mail package %s completed with survey results", mail_package_id)
        return completed

    def _merge_updated_package(self, mail_package_id: str, local: MailPackage | None, remote: dict | None) -> MailPackage:
        """Overlay the backend's package on the stored one, keeping locally owned fields."""
        if local is None and not remote:
            raise UpdateFailedError(f"No package data available for {mail_package_id}")

        now = self._clock()
        merged: dict = local.to_json_dict() if local else {}
        # nulls in the response never erase what the local record already knows
        merged.update({key: value for key, value in (remote or {}).items() if value is not None})
        if local is not None:
            merged["createdAt"] = local.to_json_dict()["createdAt"]
            if local.image_paths is not None:
                merged["imagePaths"] = list(local.image_paths)
        merged["id"] = merged.get("id") or mail_package_id
        merged["createdAt"] = merged.get("createdAt") or now.isoformat()
        merged["updatedAt"] = merged.get("updatedAt") or now.isoformat()

        try:
            package = MailPackage.model_validate(merged)
        except ValueError as e:
            raise UpdateFailedError(f"invalid package returned by backend: {e}") from e

        return package.model_copy(
            update={
                "processing_status": ProcessingStatus.COMPLETED,
                "is_approved": True,
                "survey_completed_at": now,
            }
        )
