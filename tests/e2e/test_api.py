import asyncio
import io

import pytest
from PIL import Image

from tests.fakes import make_jpeg, make_png
from ungrid.core.exceptions import ServiceRefusalError


def _upload(png: bytes, name: str = "file"):
    return {name: ("image.png", png, "image/png")}


async def _split(client, layout="2x2", aspect_ratio="1:1", size=(300, 300)):
    return await client.post(
        "/api/v1/panels/split",
        files=_upload(make_png(*size)),
        data={"layout": layout, "resolution": "1K", "aspect_ratio": aspect_ratio},
    )


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["credentials_configured"] is True


@pytest.mark.asyncio
async def test_split_returns_panels(client):
    response = await _split(client)

    assert response.status_code == 200
    data = response.json()
    assert data["layout"] == "2x2"
    assert (data["panel_width"], data["panel_height"]) == (1024, 1024)
    assert [p["index"] for p in data["panels"]] == [0, 1, 2, 3]
    assert all(p["status"] == "idle" for p in data["panels"])


@pytest.mark.asyncio
async def test_split_auto_aspect_ratio(client):
    square = await _split(client, aspect_ratio="auto", size=(300, 310))
    wide = await _split(client, aspect_ratio="auto", size=(600, 300))

    assert square.json()["aspect_ratio"] == "1:1"
    assert wide.json()["aspect_ratio"] == "16:9"


@pytest.mark.asyncio
async def test_split_rejects_non_image(client):
    response = await client.post(
        "/api/v1/panels/split",
        files=_upload(b"not an image"),
        data={"layout": "3x3"},
    )

    assert response.status_code == 400
    assert response.json()["type"] == "ValidationError"


@pytest.mark.asyncio
async def test_start_runs_in_background(client, session, fake_service):
    # Arrange
    await _split(client)

    # Act
    response = await client.post("/api/v1/panels/start", json={"resolution": "1K", "aspect_ratio": "1:1"})
    await session.wait_idle()

    # Assert
    assert response.status_code == 202
    assert response.json()["item_count"] == 4
    snapshot = (await client.get("/api/v1/panels")).json()
    assert snapshot["run_state"] == "idle"
    assert [p["status"] for p in snapshot["items"]] == ["success"] * 4
    assert len(fake_service.calls) == 4

    panel_id = snapshot["items"][0]["id"]
    image = await client.get(f"/api/v1/panels/{panel_id}/image")
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/png"
    assert Image.open(io.BytesIO(image.content)).format == "PNG"


@pytest.mark.asyncio
async def test_second_run_conflicts_and_cancel_resets_panel(client, session, fake_service):
    await _split(client)
    fake_service.gate = asyncio.Event()

    await client.post("/api/v1/panels/start")
    await asyncio.sleep(0.01)

    busy = await client.post("/api/v1/panels/resume")
    assert busy.status_code == 409
    assert busy.json()["details"]["active_run"] == "panels"

    cancel = await client.post("/api/v1/panels/cancel")
    assert cancel.json() == {"cancelled": True, "run_state": "cancelling"}

    fake_service.gate.set()
    await session.wait_idle()

    snapshot = (await client.get("/api/v1/panels")).json()
    assert [p["status"] for p in snapshot["items"]] == ["idle"] * 4


@pytest.mark.asyncio
async def test_start_without_credentials_is_unauthorized(client, session):
    await _split(client)
    session.credentials._fallback_key = None

    response = await client.post("/api/v1/panels/start")

    assert response.status_code == 401
    assert response.json()["type"] == "MissingCredentialError"


@pytest.mark.asyncio
async def test_credentials_endpoint_never_echoes_key(client):
    response = await client.put("/api/v1/credentials", json={"api_key": "secret-value"})

    assert response.status_code == 200
    assert response.json() == {"configured": True, "source": "manual", "locked": False}
    assert "secret-value" not in response.text


@pytest.mark.asyncio
async def test_job_queue_flow(client, session, fake_service):
    fake_service.results = [ServiceRefusalError("nope")]
    created = await client.post(
        "/api/v1/jobs",
        files={
            "target": ("t.png", make_png(), "image/png"),
            "reference": ("r.png", make_png(color=(0, 0, 0, 255)), "image/png"),
        },
        data={"fix_kind": "restore-linework", "context_text": "ink"},
    )
    assert created.status_code == 201
    job_id = created.json()["id"]

    await client.post("/api/v1/jobs/run")
    await session.wait_idle()
    job = (await client.get("/api/v1/jobs")).json()["items"][0]
    assert job["status"] == "error"
    assert job["error"] == "Model Refusal: nope"

    await client.post(f"/api/v1/jobs/{job_id}/rerun")
    await session.wait_idle()
    result = await client.get(f"/api/v1/jobs/{job_id}/result")
    assert result.status_code == 200

    confirm = await client.post("/api/v1/jobs/run")
    assert confirm.status_code == 409
    assert confirm.json()["type"] == "RerunConfirmationRequired"

    forced = await client.post("/api/v1/jobs/run?force=true")
    assert forced.status_code == 202
    await session.wait_idle()


@pytest.mark.asyncio
async def test_job_queue_capacity(client):
    files = {
        "target": ("t.png", make_png(), "image/png"),
        "reference": ("r.png", make_png(), "image/png"),
    }
    for _ in range(5):
        assert (await client.post("/api/v1/jobs", files=files)).status_code == 201

    response = await client.post("/api/v1/jobs", files=files)

    assert response.status_code == 409
    assert response.json()["type"] == "QueueFullError"


@pytest.mark.asyncio
async def test_chain_flow(client, session, fake_service):
    await client.put("/api/v1/chain/source", files=_upload(make_png()))
    for instruction in ("add rain", "make it night"):
        assert (await client.post("/api/v1/chain/steps", json={"instruction": instruction})).status_code == 201

    response = await client.post("/api/v1/chain/execute", json={"resolution": "1K"})
    await session.wait_idle()

    assert response.status_code == 202
    chain = (await client.get("/api/v1/chain")).json()
    assert chain["has_source"] and not chain["has_reference"]
    assert [s["status"] for s in chain["items"]] == ["completed", "completed"]

    step_id = chain["items"][1]["id"]
    image = await client.get(f"/api/v1/chain/steps/{step_id}/image")
    assert image.status_code == 200
    assert fake_service.calls[1].image == session.chain.steps[0].result_image


@pytest.mark.asyncio
async def test_chain_step_image_keeps_the_returned_format(client, session, fake_service):
    # Arrange
    jpeg = make_jpeg()
    fake_service.results = [jpeg, make_png()]
    await client.put("/api/v1/chain/source", files=_upload(make_png()))
    for instruction in ("add fog", "warm tones"):
        await client.post("/api/v1/chain/steps", json={"instruction": instruction})

    # Act
    await client.post("/api/v1/chain/execute", json={"resolution": "1K"})
    await session.wait_idle()

    # Assert
    first = session.chain.steps[0]
    image = await client.get(f"/api/v1/chain/steps/{first.id}/image")
    assert image.headers["content-type"] == "image/jpeg"
    assert image.content == jpeg
    assert fake_service.calls[1].image == jpeg


@pytest.mark.asyncio
async def test_unknown_item_is_not_found(client):
    response = await client.post("/api/v1/panels/does-not-exist/retry")

    assert response.status_code == 404
    assert response.json()["details"]["kind"] == "Panel"


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    response = await client.get("/api/v1/metrics")

    assert response.status_code == 200
    assert "ungrid_runs_total" in response.text
