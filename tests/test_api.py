from __future__ import annotations

import asyncio
import io
from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from PIL import Image

from api.dressup.compositing import BackdropLibrary, BackgroundCompositor
from api.dressup.cv import PreprocessingOrchestrator
from api.dressup.cv.removal import BackgroundRemovalCoordinator, LocalBackgroundRemover
from api.dressup import main
from api.dressup.main import app, get_backdrop_library, get_compositor, get_orchestrator, run_cancellable

from conftest import FailingRemover, framed_png, make_image


client = TestClient(app)


@pytest.fixture
def backdrops(tmp_path):
    Image.new("RGB", (300, 200), (40, 40, 160)).save(tmp_path / "studio.jpg", format="JPEG")
    library = BackdropLibrary(directory=tmp_path)
    app.dependency_overrides[get_backdrop_library] = lambda: library
    yield library
    app.dependency_overrides.pop(get_backdrop_library, None)


@pytest.fixture
def local_pipeline(backdrops):
    coordinator = BackgroundRemovalCoordinator([LocalBackgroundRemover()])
    app.dependency_overrides[get_orchestrator] = lambda: PreprocessingOrchestrator(coordinator=coordinator)
    app.dependency_overrides[get_compositor] = lambda: BackgroundCompositor(coordinator=coordinator, library=backdrops)
    yield
    app.dependency_overrides.pop(get_orchestrator, None)
    app.dependency_overrides.pop(get_compositor, None)


@pytest.fixture
def broken_pipeline(backdrops):
    coordinator = BackgroundRemovalCoordinator([FailingRemover()])
    app.dependency_overrides[get_orchestrator] = lambda: PreprocessingOrchestrator(coordinator=coordinator)
    yield
    app.dependency_overrides.pop(get_orchestrator, None)


def pair(person: bytes, garment: bytes) -> dict:
    return {
        "person": ("person.png", person, "image/png"),
        "garment": ("garment.png", garment, "image/png"),
    }


def test_healthz():
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["ok"] is True
    assert "X-Process-Time" in response.headers


def test_metrics_counts_requests():
    client.get("/healthz")
    data = client.get("/metrics").json()
    assert data["counters"]["requests_total"]["GET /healthz"] >= 1


def test_preprocess_returns_processed_images(local_pipeline):
    response = client.post(
        "/preprocess",
        files=pair(framed_png(), framed_png(center=(0, 0, 200))),
        data={"garment_type": "top", "debug": "true"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["format"] == "PNG"
    assert data["steps"] == {
        "person_background_removed": True,
        "garment_background_removed": True,
        "garment_segmented": True,
    }
    assert data["person_image"].startswith("data:image/png;base64,")
    assert data["debug"]["completed_stages"][-1] == "encoded"
    assert data["debug"]["garment_classification"]["declared_type"] == "top"


def test_preprocess_failure_is_unprocessable(broken_pipeline):
    response = client.post("/preprocess", files=pair(framed_png(), framed_png()))
    assert response.status_code == 422
    data = response.json()
    assert data["ok"] is False
    assert data["code"] == "VerificationError"
    assert data["stage"] == "verified"
    assert "Cannot proceed without background removal" in data["message"]
    assert data["remediation"]
    assert data["retryable"] is True
    assert "person_image" not in data


def test_preprocess_rejects_empty_upload(local_pipeline):
    response = client.post("/preprocess", files=pair(b"", framed_png()))
    assert response.status_code == 400


def test_preprocess_rejects_unknown_garment_type(local_pipeline):
    response = client.post("/preprocess", files=pair(framed_png(), framed_png()), data={"garment_type": "hat"})
    assert response.status_code == 400


def test_preprocess_undecodable_image(local_pipeline):
    response = client.post("/preprocess", files=pair(b"not an image", framed_png()))
    assert response.status_code == 422
    assert response.json()["code"] == "DecodeError"


def test_composite_applies_backdrop(local_pipeline):
    response = client.post(
        "/composite",
        files={"image": ("result.png", framed_png(size=120, inner=60), "image/png")},
        data={"backdrop": "studio"},
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["X-Compositing"] == "applied"
    assert response.headers["X-Backdrop"] == "studio"
    with Image.open(io.BytesIO(response.content)) as image:
        assert image.size == (120, 120)


def test_composite_falls_back_to_original(local_pipeline):
    original = b"this is not an image"
    response = client.post(
        "/composite",
        files={"image": ("result.bin", original, "application/octet-stream")},
        data={"backdrop": "studio"},
    )
    assert response.status_code == 200
    assert response.headers["X-Compositing"] == "fallback"
    assert response.content == original


def test_list_backdrops(backdrops):
    response = client.get("/backdrops")
    assert response.status_code == 200
    entries = {entry["name"]: entry for entry in response.json()["backdrops"]}
    assert set(entries) == {"flat-fill", "studio", "fitting-room"}
    assert entries["studio"]["available"] is True
    assert entries["fitting-room"]["available"] is False


def test_backdrop_preview(backdrops):
    response = client.get("/backdrops/flat-fill/preview")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"

    assert client.get("/backdrops/studio/preview").status_code == 200
    assert client.get("/backdrops/fitting-room/preview").status_code == 404


def test_make_image_upload_is_accepted(local_pipeline):
    files = pair(make_image(64, 96, color=(10, 10, 10)), make_image(64, 64, color=(250, 250, 250)))
    response = client.post("/preprocess", files=files, data={"segment_garment": "false"})
    assert response.status_code == 200
    assert response.json()["steps"]["garment_segmented"] is False


class StubRequest:
    def __init__(self, disconnected: bool = False) -> None:
        self.disconnected = disconnected
        self.url = SimpleNamespace(path="/preprocess")

    async def is_disconnected(self) -> bool:
        return self.disconnected


async def slow_work(cancelled: asyncio.Event) -> str:
    try:
        await asyncio.sleep(30)
    except asyncio.CancelledError:
        cancelled.set()
        raise
    return "finished"


@pytest.fixture
def fast_polling(monkeypatch):
    monkeypatch.setattr(main, "DISCONNECT_POLL_SECONDS", 0.01)


@pytest.mark.asyncio
async def test_run_cancellable_times_out(fast_polling):
    cancelled = asyncio.Event()
    with pytest.raises(HTTPException) as excinfo:
        await run_cancellable(StubRequest(), slow_work(cancelled), timeout=0.05)
    assert excinfo.value.status_code == 504
    await asyncio.wait_for(cancelled.wait(), timeout=1)


@pytest.mark.asyncio
async def test_run_cancellable_stops_on_disconnect(fast_polling):
    cancelled = asyncio.Event()
    with pytest.raises(HTTPException) as excinfo:
        await run_cancellable(StubRequest(disconnected=True), slow_work(cancelled), timeout=30)
    assert excinfo.value.status_code == 499
    await asyncio.wait_for(cancelled.wait(), timeout=1)


@pytest.mark.asyncio
async def test_run_cancellable_returns_result():
    async def quick() -> str:
        return "done"

    assert await run_cancellable(StubRequest(), quick(), timeout=5) == "done"
