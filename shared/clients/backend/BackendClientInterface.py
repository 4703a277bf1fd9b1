from abc import abstractmethod

import httpx
from pydantic import ValidationError

from shared.clients.ClientInterface import ClientInterface
from shared.clients.backend.models.PackageProcessing import ProcessPackageRequest, ProcessPackageResponse
from shared.clients.backend.models.PackageUpdate import UpdatePackageRequest, UpdatePackageResponse
from shared.clients.backend.models.ScanUpload import ScanUploadRequest, ScanUploadResponse
from shared.helper.HelperConfig import HelperConfig
from shared.models.errors import ProcessingFailedError, UpdateFailedError, UploadFailedError


class BackendClientInterface(ClientInterface):
    """Client for the survey backend that stores scans and classifies mail packages."""

    def __init__(self, helper_config: HelperConfig, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(helper_config=helper_config, transport=transport)
        self._auth_token: str | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def _get_client_type(self) -> str:
        return "backend"

    ################ AUTH ##################
    def set_auth_token(self, token: str | None) -> None:
        """Use a session token (e.g. a user JWT) instead of the configured API key.

        Args:
            token (str | None): Bearer token, or None to fall back to the configured key.
        """
        self._auth_token = token

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_endpoint_scan_upload(self) -> str:
        """Returns the endpoint path for scan and OCR-text uploads (e.g. "/mail-scan-upload")."""
        pass

    @abstractmethod
    def _get_endpoint_process_package(self, mail_package_id: str) -> str:
        """Returns the endpoint path that runs AI classification for a package."""
        pass

    @abstractmethod
    def _get_endpoint_update_package(self, mail_package_id: str) -> str:
        """Returns the endpoint path that updates a package with survey results."""
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_upload_scan(self, request: ScanUploadRequest) -> ScanUploadResponse:
        """Upload one scanned image or the combined OCR text of a package.

        Args:
            request (ScanUploadRequest): The upload body.

        Returns:
            ScanUploadResponse: The parsed response. success may still be False.

        Raises:
            UploadFailedError: On transport errors, non-2xx status or an unreadable response.
        """
        try:
            response = await self.do_request(
                method="POST",
                endpoint=self._get_endpoint_scan_upload(),
                json=request.to_payload(),
            )
        except httpx.HTTPError as e:
            raise UploadFailedError(f"network error: {e}") from e

        if not response.is_success:
            self.logging.error(
                "Scan upload '%s' failed: status %d, body: %s",
                request.filename,
                response.status_code,
                response.text[:200],
            )
            raise UploadFailedError(f"server returned status {response.status_code}")

        try:
            return ScanUploadResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UploadFailedError(f"invalid upload response: {e}") from e

    async def do_process_package(self, mail_package_id: str, request: ProcessPackageRequest) -> ProcessPackageResponse:
        """Submit the combined OCR text of a package for classification.

        Args:
            mail_package_id (str): Backend id of the package.
            request (ProcessPackageRequest): Combined text and notes.

        Returns:
            ProcessPackageResponse: The parsed response. success may still be False.

        Raises:
            UploadFailedError: On transport errors.
            ProcessingFailedError: On non-2xx status or an unreadable response.
        """
        try:
            response = await self.do_request(
                method="POST",
                endpoint=self._get_endpoint_process_package(mail_package_id),
                json=request.to_json_dict(),
            )
        except httpx.HTTPError as e:
            raise UploadFailedError(f"network error: {e}") from e

        if not response.is_success:
            self.logging.error(
                "Processing request for package %s failed: status %d, body: %s",
                mail_package_id,
                response.status_code,
                response.text[:200],
            )
            raise ProcessingFailedError(f"server returned status {response.status_code}")

        try:
            return ProcessPackageResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ProcessingFailedError(f"invalid processing response: {e}") from e

    async def do_update_package(self, mail_package_id: str, request: UpdatePackageRequest) -> UpdatePackageResponse:
        """Send survey results and final status for a package.

        Args:
            mail_package_id (str): Backend id of the package.
            request (UpdatePackageRequest): The update body.

        Returns:
            UpdatePackageResponse: The parsed response. success may still be False.

        Raises:
            UpdateFailedError: On transport errors, non-2xx status or an unreadable response.
        """
        try:
            response = await self.do_request(
                method="PUT",
                endpoint=self._get_endpoint_update_package(mail_package_id),
                json=request.to_json_dict(),
            )
        except httpx.HTTPError as e:
            raise UpdateFailedError(f"network error: {e}") from e

        if not response.is_success:
            self.logging.error(
                "Update of package %s failed: status %d, body: %s",
                mail_package_id,
                response.status_code,
                response.text[:200],
            )
            raise UpdateFailedError(f"server returned status {response.status_code}")

        try:
            return UpdatePackageResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UpdateFailedError(f"invalid update response: {e}") from e
