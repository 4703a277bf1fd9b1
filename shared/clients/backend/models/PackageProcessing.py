"""Wire models for POST /mail-package/{id}/process."""

from shared.models.mail import CamelModel, ProcessingResult


class ProcessPackageRequest(CamelModel):
    input_text: str
    processing_notes: str


class ProcessPackageResponse(CamelModel):
    success: bool
    processing_result: ProcessingResult | None = None
