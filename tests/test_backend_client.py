from __future__ import annotations

import asyncio

import httpx
import pytest

from shared.clients.backend.BackendClientManager import BackendClientManager
from shared.clients.backend.models.PackageProcessing import ProcessPackageRequest
from shared.clients.backend.models.PackageUpdate import UpdatePackageRequest
from shared.clients.backend.models.ScanUpload import ScanUploadRequest
from shared.clients.backend.survey.BackendClientSurvey import BackendClientSurvey
from shared.models.errors import ProcessingFailedError, UpdateFailedError, UploadFailedError


def _upload_request() -> ScanUploadRequest:
    return ScanUploadRequest(
        document_type="scan",
        image_sequence=1,
        file_data="AAAA",
        filename="ts_1.jpg",
        mime_type="image/jpeg",
    )


def _update_request() -> UpdatePackageRequest:
    return UpdatePackageRequest(
        brand_name="Acme",
        company_validated=True,
        name_check="me",
        notes="Survey completed",
        status="completed",
        is_approved=True,
        processing_notes="Survey results processed",
    )


def _client(helper_config, handler) -> BackendClientSurvey:
    client = BackendClientSurvey(helper_config=helper_config, transport=httpx.MockTransport(handler))
    asyncio.run(client.boot())
    return client


def test_manager_builds_survey_client(helper_config, monkeypatch):
    monkeypatch.delenv("BACKEND_ENGINE", raising=False)

    client = BackendClientManager(helper_config=helper_config).get_client()

    assert isinstance(client, BackendClientSurvey)
    assert client.get_engine_name() == "survey"


def test_manager_rejects_unknown_engine(helper_config, monkeypatch):
    monkeypatch.setenv("BACKEND_ENGINE", "carrierpigeon")

    with pytest.raises(ValueError):
        BackendClientManager(helper_config=helper_config)


def test_request_before_boot_fails(helper_config):
    client = BackendClientSurvey(helper_config=helper_config)

    assert not client.is_booted()
    with pytest.raises(Exception):
        asyncio.run(client.do_upload_scan(_upload_request()))


def test_upload_sends_bearer_token_and_parses_package_id(helper_config, monkeypatch):
    monkeypatch.setenv("BACKEND_SURVEY_API_KEY", "secret-key")
    monkeypatch.setenv("BACKEND_SURVEY_BASE_URL", "https://backend.test/api/")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "uploadType": "scan", "scan": {"mailpackId": "pkg-9"}})

    response = asyncio.run(_client(helper_config, handler).do_upload_scan(_upload_request()))

    assert response.scan.mailpack_id == "pkg-9"
    assert str(seen[0].url) == "https://backend.test/api/mail-scan-upload"
    assert seen[0].headers["Authorization"] == "Bearer secret-key"
    assert seen[0].headers["User-Agent"].startswith("mail-scan-bridge/")


def test_session_token_overrides_api_key(helper_config, monkeypatch):
    monkeypatch.setenv("BACKEND_SURVEY_API_KEY", "secret-key")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True})

    client = _client(helper_config, handler)
    client.set_auth_token("user-jwt")
    asyncio.run(client.do_upload_scan(_upload_request()))

    assert seen[0].headers["Authorization"] == "Bearer user-jwt"


def test_upload_error_status_raises_upload_failed(helper_config):
    client = _client(helper_config, lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(UploadFailedError, match="status 500"):
        asyncio.run(client.do_upload_scan(_upload_request()))


def test_transport_error_raises_upload_failed(helper_config):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(helper_config, handler)

    with pytest.raises(UploadFailedError, match="network error"):
        asyncio.run(client.do_upload_scan(_upload_request()))
    with pytest.raises(UploadFailedError):
        asyncio.run(client.do_process_package("pkg-1", ProcessPackageRequest(input_text="x", processing_notes="n")))


def test_process_package_posts_combined_text(helper_config):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "processingResult": {"industry": "Retail", "brandName": "Acme"}})

    response = asyncio.run(
        _client(helper_config, handler).do_process_package(
            "pkg-1", ProcessPackageRequest(input_text="--- Image 1 ---\nA\n\n", processing_notes="Combined OCR text from 1 images")
        )
    )

    assert seen[0].url.path.endswith("/mail-package/pkg-1/process")
    assert response.processing_result.brand_name == "Acme"


def test_process_package_rejection_raises_processing_failed(helper_config):
    client = _client(helper_config, lambda request: httpx.Response(422, json={"error": "bad input"}))

    with pytest.raises(ProcessingFailedError):
        asyncio.run(client.do_process_package("pkg-1", ProcessPackageRequest(input_text="x", processing_notes="n")))


def test_update_package_uses_put(helper_config):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "mailPackage": {"id": "pkg-1"}})

    response = asyncio.run(_client(helper_config, handler).do_update_package("pkg-1", _update_request()))

    assert seen[0].method == "PUT"
    assert seen[0].url.path.endswith("/mail-package/pkg-1")
    assert response.mail_package == {"id": "pkg-1"}


def test_update_package_error_status_raises_update_failed(helper_config):
    client = _client(helper_config, lambda request: httpx.Response(404, json={"error": "not found"}))

    with pytest.raises(UpdateFailedError):
        asyncio.run(client.do_update_package("pkg-1", _update_request()))


def test_healthcheck_gets_base_url_without_body(helper_config, monkeypatch):
    monkeypatch.delenv("BACKEND_SURVEY_BASE_URL", raising=False)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"status": "ok"})

    response = asyncio.run(_client(helper_config, handler).do_healthcheck())

    assert response.status_code == 200
    assert seen[0].method == "GET"
    assert str(seen[0].url) == "https://survey-khaki-chi.vercel.app/api"
    assert seen[0].content == b""
