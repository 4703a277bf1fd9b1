"""Wire models for POST /mail-scan-upload."""

from pydantic import BaseModel

from shared.models.mail import CamelModel


class ScanUploadMetadata(BaseModel):
    """
    Known metadata keys attached to an upload.

    Image uploads carry timestamp and sequence, the combined OCR document
    carries type and image_count. Keys are sent exactly as named here.
    """

    timestamp: str | None = None
    sequence: str | None = None
    type: str | None = None
    image_count: str | None = None


class ScanUploadRequest(CamelModel):
    """
    Body of a scan or OCR-text upload. mail_package_id is omitted for the first
    image of a new package; the backend then assigns the id.
    """

    mail_package_id: str | None = None
    document_type: str
    image_sequence: int | None = None
    file_data: str
    filename: str
    mime_type: str
    metadata: ScanUploadMetadata = ScanUploadMetadata()

    def to_payload(self) -> dict:
        """Return the JSON body, leaving out unset optional keys."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ScanReference(CamelModel):
    mailpack_id: str | None = None


class ScanUploadResponse(CamelModel):
    success: bool
    message: str | None = None
    upload_type: str | None = None
    scan: ScanReference | None = None
