import base64
import binascii
import io

from fastapi import APIRouter, Depends, HTTPException, Request
from PIL import Image, UnidentifiedImageError

from server.core.SessionRegistry import UserSession
from server.dependencies.auth import get_user_id, verify_api_key
from server.models.requests import CreatePackageRequest, SurveyRequest
from server.models.responses import PackageListResponse, PackageStatusResponse, QueueActionResponse
from shared.models.mail import MailPackage, MailPackageSurvey, ProcessingResult

router = APIRouter(prefix="/packages", tags=["packages"], dependencies=[Depends(verify_api_key)])


async def get_session(request: Request, user_id: str | None = Depends(get_user_id)) -> UserSession:
    try:
        return await request.app.state.session_registry.get(user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


def _decode_image(encoded: str, position: int) -> Image.Image:
    try:
        with Image.open(io.BytesIO(base64.b64decode(encoded, validate=True))) as image:
            image.load()
            return image.copy()
    except (binascii.Error, UnidentifiedImageError, OSError) as e:
        raise HTTPException(status_code=422, detail=f"Image {position} is not a valid base64-encoded image: {e}")


@router.post("")
async def create_package(body: CreatePackageRequest, session: UserSession = Depends(get_session)) -> MailPackage:
    """Upload and OCR a batch of scanned pages, then queue the package for analysis.

    Args:
        body (CreatePackageRequest): Base64 images in capture order and an optional timestamp.
        session (UserSession): Workspace of the calling user.

    Returns:
        MailPackage: The new package in scanning state.
    """
    if not body.images:
        raise HTTPException(status_code=422, detail="At least one image is required.")
    images = [_decode_image(encoded, position) for position, encoded in enumerate(body.images, start=1)]
    package = await session.mail_service.create_package(images, timestamp=body.timestamp)
    await session.background_service.enqueue(package.id)
    return package


@router.get("")
async def list_packages(session: UserSession = Depends(get_session)) -> PackageListResponse:
    """List the caller's packages, newest first."""
    packages = await session.store.list_packages(newest_first=True)
    return PackageListResponse(packages=packages, total=len(packages))


@router.get("/{mail_package_id}")
async def get_package(mail_package_id: str, session: UserSession = Depends(get_session)) -> MailPackage:
    package = await session.store.get_package(mail_package_id)
    if package is None:
        raise HTTPException(status_code=404, detail=f"Mail package '{mail_package_id}' not found.")
    return package


@router.get("/{mail_package_id}/status")
async def get_package_status(mail_package_id: str, session: UserSession = Depends(get_session)) -> PackageStatusResponse:
    """Background analysis status of a package (unknown if it was never queued in this process)."""
    status = session.background_service.get_status(mail_package_id)
    return PackageStatusResponse(mail_package_id=mail_package_id, status=status, display_name=status.display_name)


@router.post("/{mail_package_id}/survey")
async def submit_survey(
    mail_package_id: str,
    body: SurveyRequest,
    session: UserSession = Depends(get_session),
) -> MailPackage:
    """Fold the user's survey answers into a package and mark it completed."""
    survey = MailPackageSurvey(
        mail_package_id=mail_package_id,
        recipient_answer=body.recipient_answer,
        brand_name_answer=body.brand_name_answer,
        intention_answer=body.intention_answer,
        industry=body.industry,
        primary_offer=body.primary_offer,
        brand_name=body.brand_name,
    )
    processing_result = None
    if body.recipient:
        processing_result = ProcessingResult(
            industry=body.industry or "",
            brand_name=body.brand_name,
            primary_offer=body.primary_offer,
            recipient=body.recipient,
        )
    return await session.mail_service.apply_survey(mail_package_id, survey, processing_result=processing_result)


@router.post("/{mail_package_id}/requeue")
async def requeue_package(mail_package_id: str, session: UserSession = Depends(get_session)) -> QueueActionResponse:
    """Explicitly retry background analysis of a package."""
    accepted = await session.background_service.requeue(mail_package_id)
    return QueueActionResponse(
        mail_package_id=mail_package_id,
        accepted=accepted,
        status=session.background_service.get_status(mail_package_id),
    )


@router.delete("/{mail_package_id}/queue")
async def dequeue_package(mail_package_id: str, session: UserSession = Depends(get_session)) -> QueueActionResponse:
    """Remove a package from the background queue."""
    await session.background_service.dequeue(mail_package_id)
    return QueueActionResponse(
        mail_package_id=mail_package_id,
        accepted=True,
        status=session.background_service.get_status(mail_package_id),
    )
