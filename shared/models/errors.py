"""Error taxonomy of the mail processing workflow.

None of these are retried internally; the caller owns the retry policy.
"""


class MailProcessingError(Exception):
    """Base class for terminal failures of one pipeline invocation."""

    prefix = "Mail processing failed"

    def __init__(self, reason: str = "") -> None:
        self.reason = reason
        super().__init__(f"{self.prefix}: {reason}" if reason else self.prefix)


class UploadFailedError(MailProcessingError):
    prefix = "Upload failed"


class ProcessingFailedError(MailProcessingError):
    prefix = "Processing failed"


class UpdateFailedError(MailProcessingError):
    prefix = "Update failed"


class OcrProcessingFailedError(MailProcessingError):
    prefix = "OCR processing failed"


class StoreCorruptedError(Exception):
    """Raised in strict mode when a local JSON file exists but cannot be decoded."""
