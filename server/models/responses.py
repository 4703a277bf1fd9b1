from shared.models.mail import BackgroundProcessingStatus, CamelModel, MailPackage


class PackageStatusResponse(CamelModel):
    mail_package_id: str
    status: BackgroundProcessingStatus
    display_name: str


class PackageListResponse(CamelModel):
    packages: list[MailPackage]
    total: int


class QueueActionResponse(CamelModel):
    mail_package_id: str
    accepted: bool
    status: BackgroundProcessingStatus
