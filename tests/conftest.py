from __future__ import annotations

import asyncio
import logging
import os
import tempfile

# logs of the app under test go to a scratch dir, not the checkout
os.environ.setdefault("ROOT_DIR", tempfile.mkdtemp(prefix="mail-scan-bridge-tests-"))

import httpx
import pytest

from shared.clients.backend.survey.BackendClientSurvey import BackendClientSurvey
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import ColorLogger
from shared.storage.LocalStore import LocalStore
from tests.fakes import FakeBackend, FakeOCRClient


@pytest.fixture
def helper_config() -> HelperConfig:
    return HelperConfig(logger=ColorLogger(logging.getLogger("mail_scan_bridge.tests")))


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def backend_client(helper_config, backend):
    client = BackendClientSurvey(helper_config=helper_config, transport=httpx.MockTransport(backend.handle))
    asyncio.run(client.boot())
    yield client
    asyncio.run(client.close())


@pytest.fixture
def ocr_client(helper_config) -> FakeOCRClient:
    return FakeOCRClient(helper_config=helper_config)


@pytest.fixture
def store(helper_config, tmp_path) -> LocalStore:
    return LocalStore(helper_config=helper_config, root_dir=tmp_path / "storage", strict=True)
