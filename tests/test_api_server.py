from __future__ import annotations

import base64
import io
import time

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from server.api_server import create_app
from shared.clients.backend.survey.BackendClientSurvey import BackendClientSurvey

API_KEY = "test-api-key"


def _encoded_page(color: str = "white") -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), color).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _headers(user_id: str | None = None) -> dict:
    headers = {"X-Api-Key": API_KEY}
    if user_id:
        headers["X-User-Id"] = user_id
    return headers


@pytest.fixture
def client(helper_config, backend, ocr_client, tmp_path, monkeypatch):
    monkeypatch.setenv("API_SERVER_API_KEY", API_KEY)
    backend_client = BackendClientSurvey(helper_config=helper_config, transport=httpx.MockTransport(backend.handle))
    app = create_app(backend_client=backend_client, ocr_client=ocr_client, root_dir=tmp_path / "storage")
    with TestClient(app) as test_client:
        yield test_client


def _wait_for_status(client: TestClient, package_id: str, expected: str, user_id: str | None = None) -> dict:
    body = {}
    for _ in range(100):
        body = client.get(f"/packages/{package_id}/status", headers=_headers(user_id)).json()
        if body["status"] == expected:
            return body
        time.sleep(0.02)
    return body


def test_requests_need_a_valid_api_key(client):
    assert client.get("/packages").status_code == 422
    assert client.get("/packages", headers={"X-Api-Key": "wrong"}).status_code == 401


def test_create_analyse_and_complete_package(client, backend):
    response = client.post(
        "/packages",
        json={"images": [_encoded_page("red"), _encoded_page("blue")], "timestamp": "2024-01-01T00:00:00Z"},
        headers=_headers(),
    )

    assert response.status_code == 200
    created = response.json()
    assert created["id"] == "pkg-1"
    assert created["asyncProcessingState"] == "scanning"
    assert created["imagePaths"] == ["2024-01-01T00:00:00Z_1.jpg", "2024-01-01T00:00:00Z_2.jpg"]

    status = _wait_for_status(client, "pkg-1", "readyForSurvey")
    assert status == {"mailPackageId": "pkg-1", "status": "readyForSurvey", "displayName": "Ready for Survey"}

    package = client.get("/packages/pkg-1", headers=_headers()).json()
    assert package["industry"] == "Retail"
    assert package["brandName"] == "Acme"

    completed = client.post(
        "/packages/pkg-1/survey",
        json={"recipientAnswer": "me", "brandNameAnswer": "yes", "intentionAnswer": "no", "brandName": "Acme"},
        headers=_headers(),
    )
    assert completed.status_code == 200
    assert completed.json()["processingStatus"] == "completed"
    assert completed.json()["isApproved"] is True

    listing = client.get("/packages", headers=_headers()).json()
    assert listing["total"] == 1
    assert listing["packages"][0]["processingStatus"] == "completed"


def test_invalid_image_is_rejected(client, backend):
    response = client.post("/packages", json={"images": ["not base64!"]}, headers=_headers())

    assert response.status_code == 422
    assert backend.uploads() == []


def test_empty_image_list_is_rejected(client):
    assert client.post("/packages", json={"images": []}, headers=_headers()).status_code == 422


def test_unknown_package_returns_404_and_unknown_status(client):
    assert client.get("/packages/nope", headers=_headers()).status_code == 404
    assert client.get("/packages/nope/status", headers=_headers()).json()["status"] == "unknown"


def test_backend_failures_map_to_bad_gateway(client, backend):
    backend.upload_success = False

    response = client.post("/packages", json={"images": [_encoded_page()]}, headers=_headers())

    assert response.status_code == 502
    assert response.json()["error"] == "UploadFailedError"


def test_requeue_without_ocr_data_fails(client):
    response = client.post("/packages/nope/requeue", headers=_headers())

    assert response.status_code == 502
    assert "No OCR data" in response.json()["detail"]


def test_failed_package_can_be_requeued(client, backend):
    backend.failing_process_ids.add("pkg-1")
    client.post("/packages", json={"images": [_encoded_page()]}, headers=_headers())
    assert _wait_for_status(client, "pkg-1", "failed")["status"] == "failed"

    backend.failing_process_ids.clear()
    response = client.post("/packages/pkg-1/requeue", headers=_headers())

    assert response.json()["accepted"] is True
    assert _wait_for_status(client, "pkg-1", "readyForSurvey")["status"] == "readyForSurvey"


def test_dequeue_clears_status(client):
    response = client.delete("/packages/pkg-1/queue", headers=_headers())

    assert response.status_code == 200
    assert response.json() == {"mailPackageId": "pkg-1", "accepted": True, "status": "unknown"}


def test_invalid_survey_is_rejected(client):
    response = client.post(
        "/packages/pkg-1/survey",
        json={"brandNameAnswer": "maybe", "intentionAnswer": "no"},
        headers=_headers(),
    )

    assert response.status_code == 422


def test_survey_requires_recipient_for_named_addressee(client):
    response = client.post(
        "/packages/pkg-1/survey",
        json={"brandNameAnswer": "yes", "intentionAnswer": "no", "industry": "Retail", "recipient": "Jane Doe"},
        headers=_headers(),
    )

    assert response.status_code == 422


def test_users_see_only_their_own_packages(client, backend):
    client.post("/packages", json={"images": [_encoded_page()]}, headers=_headers("alice"))

    assert client.get("/packages", headers=_headers("alice")).json()["total"] == 1
    assert client.get("/packages", headers=_headers("bob")).json()["total"] == 0
    assert client.get("/packages", headers=_headers()).json()["total"] == 0


def test_invalid_user_id_is_rejected(client):
    assert client.get("/packages", headers=_headers("../etc")).status_code == 400
