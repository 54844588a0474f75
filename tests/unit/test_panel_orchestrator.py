import asyncio

import pytest
from unittest.mock import AsyncMock
from PIL import Image

from tests.fakes import FakeGenerationService, make_png
from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import (
    ExternalAPIError,
    MissingCredentialError,
    RunActiveError,
    ServiceRefusalError,
)
from ungrid.engines.extraction.layouts import AspectRatio, GridLayout, ProcessingMode, Resolution
from ungrid.engines.extraction.schemas import BoundingBox
from ungrid.modules.imagery.models import EnhancementParams, PanelStatus, RunState
from ungrid.pipeline.cancellation import RunGuard
from ungrid.pipeline.panels import PanelOrchestrator

PARAMS = EnhancementParams(resolution=Resolution.R1K, aspect_ratio=AspectRatio.SQUARE)


def _orchestrator(service, detector=None, credentials=None):
    credentials = credentials or CredentialStore(fallback_key="test-key")
    guard = RunGuard(credentials)
    return PanelOrchestrator(service, guard, credentials, detector=detector)


async def _split(orchestrator, layout=GridLayout.G2X2):
    source = Image.new("RGBA", (200, 200), (40, 40, 40, 255))
    return await orchestrator.split(source, layout, Resolution.R1K, AspectRatio.SQUARE)


@pytest.mark.asyncio
async def test_start_all_processes_every_panel_in_order():
    # Arrange
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator)

    # Act
    await orchestrator.start_all(PARAMS)

    # Assert
    assert [p.status for p in orchestrator.panels] == [PanelStatus.SUCCESS] * 4
    assert [c.image for c in service.calls] == [p.original_image for p in orchestrator.panels]
    assert all(p.generated_image for p in orchestrator.panels)
    assert orchestrator.run_state == RunState.IDLE
    assert not orchestrator.guard.is_active


@pytest.mark.asyncio
async def test_request_carries_enhancement_params():
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator, GridLayout.G1X3)

    params = EnhancementParams(resolution=Resolution.R4K, aspect_ratio=AspectRatio.PORTRAIT, mode=ProcessingMode.CREATIVE)
    await orchestrator.start_all(params)

    request = service.calls[0]
    assert request.resolution == Resolution.R4K
    assert request.aspect_ratio == AspectRatio.PORTRAIT
    assert request.reference_image is None
    assert "4K" in request.prompt


@pytest.mark.asyncio
async def test_failures_do_not_abort_the_batch():
    service = FakeGenerationService(results=[
        make_png(),
        ServiceRefusalError("I can't help with that"),
        ExternalAPIError("boom", service="gemini_image"),
        make_png(),
    ])
    orchestrator = _orchestrator(service)
    await _split(orchestrator)

    await orchestrator.start_all(PARAMS)

    statuses = [p.status for p in orchestrator.panels]
    assert statuses == [PanelStatus.SUCCESS, PanelStatus.ERROR, PanelStatus.ERROR, PanelStatus.SUCCESS]
    assert orchestrator.panels[1].error == "Model Refusal: I can't help with that"
    assert len(service.calls) == 4


@pytest.mark.asyncio
async def test_resume_skips_successful_panels():
    service = FakeGenerationService(results=[make_png(), RuntimeError("flaky"), make_png(), RuntimeError("flaky")])
    orchestrator = _orchestrator(service)
    await _split(orchestrator)
    await orchestrator.start_all(PARAMS)
    failed = [p for p in orchestrator.panels if p.status == PanelStatus.ERROR]
    service.calls.clear()

    queued = await orchestrator.resume(PARAMS)

    assert queued == 2
    assert [c.image for c in service.calls] == [p.original_image for p in failed]
    assert all(p.status == PanelStatus.SUCCESS for p in orchestrator.panels)


@pytest.mark.asyncio
async def test_resume_with_nothing_left_is_a_noop():
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator)
    await orchestrator.start_all(PARAMS)
    service.calls.clear()

    assert await orchestrator.resume(PARAMS) == 0
    assert service.calls == []


@pytest.mark.asyncio
async def test_retry_one_processes_a_single_panel():
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator)
    target = orchestrator.panels[2]

    panel = await orchestrator.retry_one(target.id, PARAMS)

    assert panel is target
    assert len(service.calls) == 1
    assert target.status == PanelStatus.SUCCESS
    assert [p.status for p in orchestrator.panels].count(PanelStatus.IDLE) == 3


@pytest.mark.asyncio
async def test_cancel_discards_late_result():
    # Arrange
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator)

    def cancel_during_second_call(request, call_number):
        if call_number == 2:
            assert orchestrator.cancel() is True

    service.on_call = cancel_during_second_call

    # Act
    await orchestrator.start_all(PARAMS)

    # Assert: the second call succeeded but resolved after cancellation
    assert len(service.calls) == 2
    assert [p.status for p in orchestrator.panels] == [
        PanelStatus.SUCCESS, PanelStatus.IDLE, PanelStatus.IDLE, PanelStatus.IDLE
    ]
    assert orchestrator.panels[1].generated_image is None
    assert orchestrator.run_state == RunState.IDLE


@pytest.mark.asyncio
async def test_cancel_discards_late_failure():
    service = FakeGenerationService(results=[ExternalAPIError("late", service="gemini_image")])
    orchestrator = _orchestrator(service)
    await _split(orchestrator, GridLayout.G1X3)
    service.on_call = lambda request, n: orchestrator.cancel()

    await orchestrator.start_all(PARAMS)

    assert orchestrator.panels[0].status == PanelStatus.IDLE
    assert orchestrator.panels[0].error is None
    assert len(service.calls) == 1


@pytest.mark.asyncio
async def test_cancel_abandons_a_call_that_never_returns():
    # Arrange
    service = FakeGenerationService()
    service.gate = asyncio.Event()
    credentials = CredentialStore(fallback_key="test-key")
    orchestrator = _orchestrator(service, credentials=credentials)
    await _split(orchestrator)
    run = asyncio.ensure_future(orchestrator.start_all(PARAMS))
    await asyncio.sleep(0.01)

    # Act
    assert orchestrator.cancel() is True
    await run

    # Assert: the guard and the credential lock are released without the call resolving
    assert not service.gate.is_set()
    assert not orchestrator.guard.is_active
    assert not credentials.locked
    assert orchestrator.run_state == RunState.IDLE
    assert [p.status for p in orchestrator.panels] == [PanelStatus.IDLE] * 4
    assert len(service.calls) == 1

    service.gate = None
    panel = await orchestrator.retry_one(orchestrator.panels[0].id, PARAMS)
    assert panel.status == PanelStatus.SUCCESS


def test_cancel_when_idle_returns_false():
    orchestrator = _orchestrator(FakeGenerationService())

    assert orchestrator.cancel() is False


@pytest.mark.asyncio
async def test_missing_credential_halts_without_marking_error():
    service = FakeGenerationService(results=[make_png(), MissingCredentialError("API key rejected")])
    orchestrator = _orchestrator(service)
    await _split(orchestrator)

    with pytest.raises(MissingCredentialError):
        await orchestrator.start_all(PARAMS)

    assert [p.status for p in orchestrator.panels] == [
        PanelStatus.SUCCESS, PanelStatus.IDLE, PanelStatus.IDLE, PanelStatus.IDLE
    ]
    assert len(service.calls) == 2
    assert orchestrator.last_error == "API key rejected"
    assert not orchestrator.guard.is_active


@pytest.mark.asyncio
async def test_run_refused_without_credentials():
    service = FakeGenerationService()
    orchestrator = _orchestrator(service, credentials=CredentialStore())
    await _split(orchestrator)

    with pytest.raises(MissingCredentialError):
        await orchestrator.start_all(PARAMS)

    assert service.calls == []


@pytest.mark.asyncio
async def test_refused_start_keeps_previous_results():
    # Arrange
    credentials = CredentialStore()
    credentials.set("manual-key")
    service = FakeGenerationService()
    orchestrator = _orchestrator(service, credentials=credentials)
    await _split(orchestrator)
    await orchestrator.start_all(PARAMS)
    credentials.clear()

    # Act
    with pytest.raises(MissingCredentialError):
        await orchestrator.start_all(PARAMS)

    # Assert
    assert [p.status for p in orchestrator.panels] == [PanelStatus.SUCCESS] * 4
    assert all(p.generated_image for p in orchestrator.panels)
    assert len(service.calls) == 4


@pytest.mark.asyncio
async def test_second_run_refused_while_active():
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator)
    errors = []

    def try_concurrent_run(request, call_number):
        if call_number == 1:
            errors.append(orchestrator.guard.is_active)
            with pytest.raises(RunActiveError):
                orchestrator.guard.acquire("jobs")

    service.on_call = try_concurrent_run
    await orchestrator.start_all(PARAMS)

    assert errors == [True]


@pytest.mark.asyncio
async def test_transitions_are_emitted_to_subscribers():
    service = FakeGenerationService()
    orchestrator = _orchestrator(service)
    await _split(orchestrator, GridLayout.G1X3)
    seen = []
    unsubscribe = orchestrator.subscribe(seen.append)

    await orchestrator.retry_one(orchestrator.panels[0].id, PARAMS)
    unsubscribe()

    item_statuses = [t.status for t in seen if t.item_id == orchestrator.panels[0].id]
    run_statuses = [t.status for t in seen if t.item_id is None]
    assert item_statuses == ["generating", "success"]
    assert run_statuses == ["running", "idle"]


@pytest.mark.asyncio
async def test_irregular_split_uses_detected_boxes():
    detector = AsyncMock()
    detector.detect.return_value = [
        BoundingBox(ymin=0, xmin=0, ymax=500, xmax=1000),
        BoundingBox(ymin=500, xmin=0, ymax=1000, xmax=1000),
    ]
    orchestrator = _orchestrator(FakeGenerationService(), detector=detector)

    result = await _split(orchestrator, GridLayout.IRREGULAR)

    assert result.used_detection
    assert not result.fell_back
    assert result.layout == GridLayout.IRREGULAR
    assert len(orchestrator.panels) == 2
    assert not orchestrator.guard.is_active


@pytest.mark.asyncio
async def test_irregular_split_falls_back_to_default_grid():
    detector = AsyncMock()
    detector.detect.return_value = [BoundingBox(ymin=10, xmin=10, ymax=10, xmax=10)]
    orchestrator = _orchestrator(FakeGenerationService(), detector=detector)

    result = await _split(orchestrator, GridLayout.IRREGULAR)

    assert result.fell_back
    assert result.layout == GridLayout.G3X3
    assert len(result.panels) == 9
    assert "3x3" in result.warnings[0]
