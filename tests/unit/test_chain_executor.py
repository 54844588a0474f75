import pytest

from tests.fakes import FakeGenerationService, make_png
from ungrid.core.credentials import CredentialStore
from ungrid.core.exceptions import MissingCredentialError, RunActiveError, ServiceRefusalError, ValidationError
from ungrid.engines.extraction.layouts import Resolution
from ungrid.modules.imagery.models import StepStatus
from ungrid.pipeline.cancellation import RunGuard
from ungrid.pipeline.chain import ChainExecutor


def _chain(service, steps=3, reference=None):
    credentials = CredentialStore(fallback_key="test-key")
    chain = ChainExecutor(service, RunGuard(credentials), credentials)
    chain.set_source(make_png(color=(1, 2, 3, 255)))
    if reference is not None:
        chain.set_reference(reference)
    for i in range(steps):
        chain.add_step(f"edit number {i + 1}")
    return chain


@pytest.mark.asyncio
async def test_each_step_feeds_the_next():
    # Arrange
    service = FakeGenerationService()
    chain = _chain(service)

    # Act
    steps = await chain.execute(Resolution.R1K)

    # Assert
    assert [s.status for s in steps] == [StepStatus.COMPLETED] * 3
    assert service.calls[0].image == chain.source_image
    assert service.calls[1].image == steps[0].result_image
    assert service.calls[2].image == steps[1].result_image
    assert all(c.reference_image is None for c in service.calls)
    assert all(c.resolution == Resolution.R1K and c.aspect_ratio is None for c in service.calls)


@pytest.mark.asyncio
async def test_reference_is_fixed_for_the_whole_run():
    service = FakeGenerationService()
    chain = _chain(service, reference=make_png(color=(9, 9, 9, 255)))

    await chain.execute()

    assert all(c.reference_image == chain.reference_image for c in service.calls)
    assert "reference" in service.calls[0].prompt


@pytest.mark.asyncio
async def test_failure_halts_and_leaves_later_steps_pending():
    service = FakeGenerationService(results=[make_png(), ServiceRefusalError("refused")])
    chain = _chain(service, steps=4)

    steps = await chain.execute()

    assert [s.status for s in steps] == [
        StepStatus.COMPLETED, StepStatus.ERROR, StepStatus.PENDING, StepStatus.PENDING
    ]
    assert steps[1].error == "Model Refusal: refused"
    assert len(service.calls) == 2


@pytest.mark.asyncio
async def test_missing_credential_halts_and_returns_step_to_pending():
    # Arrange
    service = FakeGenerationService(results=[make_png(), MissingCredentialError("API key rejected")])
    chain = _chain(service)

    # Act
    with pytest.raises(MissingCredentialError):
        await chain.execute()

    # Assert
    assert [s.status for s in chain.steps] == [StepStatus.COMPLETED, StepStatus.PENDING, StepStatus.PENDING]
    assert chain.steps[1].error is None
    assert len(service.calls) == 2
    assert chain.last_error == "API key rejected"
    assert not chain.guard.is_active


@pytest.mark.asyncio
async def test_cancel_between_steps_keeps_completed_steps():
    service = FakeGenerationService()
    chain = _chain(service)

    def cancel_after_second_step(transition):
        if transition.item_id == chain.steps[1].id and transition.status == "completed":
            chain.cancel()

    chain.subscribe(cancel_after_second_step)

    steps = await chain.execute()

    assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.PENDING]
    assert len(service.calls) == 2


@pytest.mark.asyncio
async def test_cancel_in_flight_step_returns_to_pending():
    service = FakeGenerationService()
    chain = _chain(service)
    service.on_call = lambda request, n: chain.cancel() if n == 3 else None

    steps = await chain.execute()

    assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.PENDING]
    assert steps[2].result_image is None


@pytest.mark.asyncio
async def test_cancel_after_completion_changes_nothing():
    chain = _chain(FakeGenerationService())
    await chain.execute()

    assert chain.cancel() is False
    assert [s.status for s in chain.steps] == [StepStatus.COMPLETED] * 3


@pytest.mark.asyncio
async def test_execute_resets_previous_results():
    service = FakeGenerationService(results=[ServiceRefusalError("first try")])
    chain = _chain(service, steps=2)
    await chain.execute()
    assert chain.steps[0].status == StepStatus.ERROR

    steps = await chain.execute()

    assert [s.status for s in steps] == [StepStatus.COMPLETED, StepStatus.COMPLETED]
    assert steps[0].error is None


@pytest.mark.asyncio
async def test_execute_requires_source():
    credentials = CredentialStore(fallback_key="test-key")
    chain = ChainExecutor(FakeGenerationService(), RunGuard(credentials), credentials)
    chain.add_step("anything")

    with pytest.raises(ValidationError):
        await chain.execute()


def test_blank_instruction_rejected():
    chain = _chain(FakeGenerationService(), steps=0)

    with pytest.raises(ValidationError):
        chain.add_step("   ")


@pytest.mark.asyncio
async def test_editing_rejected_while_running():
    service = FakeGenerationService()
    chain = _chain(service, steps=1)
    rejected = []

    def try_edit(request, call_number):
        for action in (lambda: chain.add_step("more"), lambda: chain.remove_step(chain.steps[0].id), chain.clear):
            try:
                action()
            except RunActiveError:
                rejected.append(True)

    service.on_call = try_edit
    await chain.execute()

    assert rejected == [True, True, True]
    assert len(chain.steps) == 1
