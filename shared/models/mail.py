"""Mail package models: the records moved between capture, analysis and survey.

Hierarchy:
  MailPackage          the central record, stored per user and returned by the backend.
  MailPackageOcrData   transient OCR bridge between capture and background analysis.
  MailPackageSurvey    user answers folded into a MailPackage once.
  ProcessingResult     classification returned by the backend's AI endpoint.

Attributes are snake_case in Python and camelCase on disk and on the wire.
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialising field names as camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        """Return the camelCase JSON representation used on disk and on the wire."""
        return self.model_dump(by_alias=True, mode="json")


class ProcessingStatus(str, Enum):
    """Authoritative completion flag of a mail package."""

    PROCESSING = "processing"
    COMPLETED = "completed"


class AsyncProcessingState(str, Enum):
    """Orchestration phase of a mail package."""

    SCANNING = "scanning"
    READY_FOR_SURVEY = "readyForSurvey"


class BackgroundProcessingStatus(str, Enum):
    """Per-package state of the background analysis queue."""

    UNKNOWN = "unknown"
    QUEUED = "queued"
    PROCESSING = "processing"
    READY_FOR_SURVEY = "readyForSurvey"
    FAILED = "failed"

    @property
    def display_name(self) -> str:
        return {
            "unknown": "Unknown",
            "queued": "Queued",
            "processing": "Processing...",
            "readyForSurvey": "Ready for Survey",
            "failed": "Failed",
        }[self.value]

    @property
    def is_completed(self) -> bool:
        return self is BackgroundProcessingStatus.READY_FOR_SURVEY

    @property
    def is_failed(self) -> bool:
        return self is BackgroundProcessingStatus.FAILED

    @property
    def is_in_progress(self) -> bool:
        return self in (BackgroundProcessingStatus.QUEUED, BackgroundProcessingStatus.PROCESSING)


class MailPackage(CamelModel):
    """A batch of scanned mail pages and everything learned about it.

    Classification fields stay None until the backend has analysed the package,
    and the backend may still omit them afterwards.

    Attributes:
        id:                       Opaque id assigned by the backend on the first upload.
        industry:                 Industry classification.
        brand_name:               Sender brand as detected by the classifier.
        primary_offer:            Main offer found in the mail piece.
        status:                   Free-text workflow label.
        processing_status:        Authoritative completion flag.
        async_processing_state:   Orchestration phase (scanning / readyForSurvey).
        image_paths:              Relative file names, one per page, in capture order.
                                  Index i corresponds to OCR text i.
        s3_key:                   Remote artifact pointer.
    """

    # Core identity
    id: str
    panelist_id: str | None = None
    package_name: str | None = None
    package_description: str | None = None

    # Classification
    industry: str | None = None
    brand_name: str | None = None
    primary_offer: str | None = None
    company_validated: bool | None = None
    response_intention: str | None = None
    name_check: str | None = None

    # Lifecycle
    status: str | None = None
    points_awarded: int = 0
    is_approved: bool = False
    processing_status: ProcessingStatus | None = None
    async_processing_state: AsyncProcessingState | None = None

    # Timestamps
    created_at: datetime
    updated_at: datetime
    processing_started_at: datetime | None = None
    processing_completed_at: datetime | None = None
    survey_completed_at: datetime | None = None

    # Media
    s3_key: str | None = None
    image_paths: list[str] | None = None

    @field_validator(
        "created_at",
        "updated_at",
        "processing_started_at",
        "processing_completed_at",
        "survey_completed_at",
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        """Dates without an offset (older files, some backend responses) are UTC."""
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class MailPackageOcrData(CamelModel):
    """OCR texts of a package, kept on disk until background analysis succeeds."""

    mail_package_id: str
    ocr_texts: list[str] = []
    timestamp: str


class ProcessingResult(CamelModel):
    """Structured classification returned by the backend."""

    industry: str
    brand_name: str | None = None
    primary_offer: str | None = None
    response_intention: str | None = None
    name_check: str | None = None
    urgency_level: str | None = None
    estimated_value: str | None = None
    recipient: str | None = None

    def requires_recipient_answer(self) -> bool:
        """True if the mail names a specific addressee the user must identify."""
        if not self.recipient:
            return False
        return self.recipient.strip().lower() not in ("", "current resident")


RECIPIENT_ANSWERS = ("me", "someone_else", "dont_know")
YES_NO_ANSWERS = ("yes", "no")


class SurveyValidationError(ValueError):
    """Raised when survey answers are missing or outside the allowed values."""


class MailPackageSurvey(CamelModel):
    """Answers collected after analysis, plus the classification they refer to."""

    mail_package_id: str = ""
    recipient_answer: str | None = None
    brand_name_answer: str | None = None
    intention_answer: str | None = None

    # echoed classification, sent back with the update
    industry: str | None = None
    primary_offer: str | None = None
    brand_name: str | None = None

    def validate_answers(self, require_recipient: bool = False) -> None:
        """Check the answers the survey screen would accept.

        Args:
            require_recipient (bool): Whether the addressee question was asked.

        Raises:
            SurveyValidationError: If a required answer is missing or not an allowed value.
        """
        if require_recipient and not self.recipient_answer:
            raise SurveyValidationError("A recipient answer is required for this mail package.")
        if self.recipient_answer and self.recipient_answer not in RECIPIENT_ANSWERS:
            raise SurveyValidationError(f"Invalid recipient answer '{self.recipient_answer}'.")
        if self.brand_name_answer not in YES_NO_ANSWERS:
            raise SurveyValidationError(f"Invalid brand name answer '{self.brand_name_answer}'.")
        if self.intention_answer not in YES_NO_ANSWERS:
            raise SurveyValidationError(f"Invalid intention answer '{self.intention_answer}'.")
