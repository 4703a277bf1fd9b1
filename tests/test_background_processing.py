from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.background_processing.BackgroundProcessingService import BackgroundProcessingService
from services.background_processing.StatusChannel import StatusEvent
from services.background_processing.background_runner import run_recovery
from services.mail_processing.MailProcessingService import MailProcessingService
from shared.models.errors import ProcessingFailedError
from shared.models.mail import AsyncProcessingState, BackgroundProcessingStatus as Status, MailPackage, MailPackageOcrData

CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def background(helper_config, backend_client, ocr_client, store) -> BackgroundProcessingService:
    mail_service = MailProcessingService(
        helper_config=helper_config,
        backend_client=backend_client,
        ocr_client=ocr_client,
        store=store,
    )
    return BackgroundProcessingService(helper_config=helper_config, mail_processing_service=mail_service, store=store)


async def _seed(store, package_id: str, with_bridge: bool = True, offset: int = 0, **fields) -> None:
    fields.setdefault("async_processing_state", AsyncProcessingState.SCANNING)
    created = CREATED + timedelta(minutes=offset)
    await store.save_package(
        MailPackage(id=package_id, created_at=created, updated_at=created, image_paths=[f"{package_id}_1.jpg"], **fields)
    )
    if with_bridge:
        await store.save_ocr_bridge(
            MailPackageOcrData(mail_package_id=package_id, ocr_texts=[f"text of {package_id}"], timestamp="ts")
        )


def _record(background) -> list[StatusEvent]:
    events: list[StatusEvent] = []
    background.status_channel.subscribe(events.append)
    return events


def _position(events: list[StatusEvent], package_id: str, status: Status) -> int:
    return next(i for i, e in enumerate(events) if e.mail_package_id == package_id and e.status == status)


def test_drain_is_serial_and_fifo(background, store, backend):
    backend.process_delay = 0.05
    events = _record(background)

    async def scenario():
        for package_id in ("a", "b", "c"):
            await _seed(store, package_id)
        for package_id in ("a", "b", "c"):
            await background.enqueue(package_id)
        await background.wait_until_idle()
        await background.close()

    asyncio.run(scenario())

    assert [package_id for package_id, _ in backend.process_calls()] == ["a", "b", "c"]
    assert _position(events, "a", Status.READY_FOR_SURVEY) < _position(events, "b", Status.PROCESSING)
    assert _position(events, "b", Status.READY_FOR_SURVEY) < _position(events, "c", Status.PROCESSING)
    for package_id in ("a", "b", "c"):
        assert background.get_status(package_id) == Status.READY_FOR_SURVEY


def test_successful_cycle_updates_package_and_removes_bridge(background, store, backend):
    backend.processing_results["a"] = {"industry": "Finance", "brandName": "Bank Co", "primaryOffer": "0% APR"}

    async def scenario():
        await _seed(store, "a", panelist_id="panelist-1")
        await background.enqueue("a")
        await background.wait_until_idle()
        await background.close()
        return await store.get_package("a"), await store.load_ocr_bridge("a")

    package, bridge = asyncio.run(scenario())

    assert bridge is None
    assert package.industry == "Finance"
    assert package.brand_name == "Bank Co"
    assert package.primary_offer == "0% APR"
    assert package.async_processing_state == AsyncProcessingState.READY_FOR_SURVEY
    assert package.processing_completed_at is not None
    assert package.created_at == CREATED
    assert package.image_paths == ["a_1.jpg"]
    assert package.panelist_id == "panelist-1"


def test_missing_bridge_fails_and_drain_continues(background, store):
    async def scenario():
        await _seed(store, "orphan", with_bridge=False)
        await _seed(store, "b")
        await background.enqueue("orphan")
        await background.enqueue("b")
        await background.wait_until_idle()
        await background.close()

    asyncio.run(scenario())

    assert background.get_status("orphan") == Status.FAILED
    assert background.get_status("b") == Status.READY_FOR_SURVEY


def test_failure_keeps_bridge_and_requeue_retries(background, store, backend):
    backend.failing_process_ids.add("a")

    async def scenario():
        await _seed(store, "a")
        await background.enqueue("a")
        await background.wait_until_idle()
        failed = background.get_status("a")
        bridge = await store.load_ocr_bridge("a")

        backend.failing_process_ids.clear()
        accepted = await background.requeue("a")
        await background.wait_until_idle()
        await background.close()
        return failed, bridge, accepted

    failed, bridge, accepted = asyncio.run(scenario())

    assert failed == Status.FAILED
    assert bridge.ocr_texts == ["text of a"]
    assert accepted is True
    assert background.get_status("a") == Status.READY_FOR_SURVEY


def test_requeue_without_bridge_raises(background):
    with pytest.raises(ProcessingFailedError):
        asyncio.run(background.requeue("gone"))


def test_enqueue_is_idempotent_while_pending(background, store, backend):
    backend.process_delay = 0.05

    async def scenario():
        await _seed(store, "a")
        first = await background.enqueue("a")
        second = await background.enqueue("a")
        await background.wait_until_idle()
        await background.close()
        return first, second

    assert asyncio.run(scenario()) == (True, False)
    assert len(backend.process_calls()) == 1


def test_dequeue_removes_waiting_package(background, store, backend):
    backend.process_delay = 0.05

    async def scenario():
        for package_id in ("a", "b", "c"):
            await _seed(store, package_id)
            await background.enqueue(package_id)
        await background.dequeue("b")
        queue = background.get_queue()
        await background.wait_until_idle()
        await background.close()
        return queue

    queue = asyncio.run(scenario())

    assert "b" not in queue
    assert [package_id for package_id, _ in backend.process_calls()] == ["a", "c"]
    assert background.get_status("b") == Status.UNKNOWN


def test_recover_pending_picks_scanning_packages_with_bridge(background, store):
    async def scenario():
        await _seed(store, "newer", offset=10)
        await _seed(store, "older", offset=0)
        await _seed(store, "no-bridge", with_bridge=False, offset=5)
        await _seed(store, "done", offset=1, async_processing_state=AsyncProcessingState.READY_FOR_SURVEY)
        recovered = await background.recover_pending()
        await background.wait_until_idle()
        await background.close()
        return recovered

    assert asyncio.run(scenario()) == ["older", "newer"]
    assert background.get_status("older") == Status.READY_FOR_SURVEY
    assert background.get_status("no-bridge") == Status.UNKNOWN


def test_run_recovery_migrates_and_drains(helper_config, background, store):
    async def scenario():
        await store.save_package(
            MailPackage(
                id="legacy",
                created_at=CREATED,
                updated_at=CREATED,
                async_processing_state=AsyncProcessingState.SCANNING,
                image_paths=["/old/sandbox/legacy_1.jpg"],
            )
        )
        await store.save_ocr_bridge(MailPackageOcrData(mail_package_id="legacy", ocr_texts=["x"], timestamp="ts"))
        results = await run_recovery(helper_config, background, store)
        await background.close()
        return results, await store.get_package("legacy")

    results, package = asyncio.run(scenario())

    assert results == {"legacy": Status.READY_FOR_SURVEY}
    assert package.image_paths == ["legacy_1.jpg"]


def test_run_recovery_with_nothing_pending(helper_config, background, store):
    assert asyncio.run(run_recovery(helper_config, background, store)) == {}
