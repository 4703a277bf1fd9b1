from shared.models.mail import CamelModel


class CreatePackageRequest(CamelModel):
    images: list[str]  # base64-encoded image files, in capture order
    timestamp: str | None = None


class SurveyRequest(CamelModel):
    recipient_answer: str | None = None
    brand_name_answer: str
    intention_answer: str

    # classification the survey was shown for
    industry: str | None = None
    primary_offer: str | None = None
    brand_name: str | None = None
    recipient: str | None = None
