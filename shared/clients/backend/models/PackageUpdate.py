"""Wire models for PUT /mail-package/{id}."""

from typing import Any

from shared.models.mail import CamelModel


class UpdatePackageRequest(CamelModel):
    brand_name: str
    industry: str | None = None
    company_validated: bool
    response_intention: str | None = None
    name_check: str
    notes: str
    status: str
    is_approved: bool
    processing_notes: str


class UpdatePackageResponse(CamelModel):
    """
    The package is kept as the raw camelCase dict: the backend may omit fields
    the local record still owns (createdAt, imagePaths), so it is only validated
    after merging with the stored package.
    """

    success: bool
    mail_package: dict[str, Any] | None = None
