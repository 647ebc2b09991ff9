"""Unit tests for FastAPI endpoints in the page processing service.

Tests cover:
- POST/GET/DELETE /v1/pages (upload, list, clear, remove)
- POST /v1/pages/reorder and /v1/pages/sort
- POST /v1/runs and GET /v1/runs/current (background run, progress)
- GET /v1/pages/{ordinal}/result (download, 404 before a result exists)
- POST /v1/pages/{ordinal}/rerun
- Auth, body size and request ID middlewares

Uses httpx.AsyncClient with ASGITransport. The controller is a real
PipelineController wired to a scripted FakeImageClient.
"""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from manana_service.pipeline.controller import PipelineController
from manana_service.pipeline.types import GeneratedImage
from tests.conftest import make_png
from tests.unit.conftest import FakeImageClient, result_bytes

RUN_BODY = {
    "mode": "colorize-and-translate",
    "batch_size": 2,
    "resolution": "1k",
    "from_language": "Japanese",
    "to_language": "English",
}


def _files(n: int) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("files", (f"page_{i:02d}.png", make_png(40, 60), "image/png")) for i in range(n)]


@pytest.fixture()
async def controller(fake_client, clock):
    async with PipelineController(fake_client, clock=clock, poll_seconds=3600) as c:
        yield c
        c.clear()


@pytest.fixture()
async def client(controller):
    from manana_service.app import app

    app.state.limiter.reset()
    app.state.controller = controller
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.state.controller = None


async def _wait_for_idle(client: AsyncClient) -> dict:
    for _ in range(2000):
        body = (await client.get("/v1/runs/current")).json()
        if not body["is_run_active"] and not any(p["status"] == "processing" for p in body["pages"]):
            return body
        await asyncio.sleep(0.001)
    raise AssertionError("run did not finish")


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestLiveness:
    async def test_liveness_returns_ok(self, client: AsyncClient):
        resp = await client.get("/liveness")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    async def test_missing_controller_is_503(self, client: AsyncClient):
        from manana_service.app import app

        app.state.controller = None
        resp = await client.get("/v1/pages")
        assert resp.status_code == 503


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


class TestPages:
    async def test_upload_appends_in_order(self, client: AsyncClient):
        resp = await client.post("/v1/pages", files=_files(3))
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 3
        assert [p["name"] for p in body["pages"]] == ["page_00.png", "page_01.png", "page_02.png"]
        assert {p["status"] for p in body["pages"]} == {"pending"}

        resp = await client.post("/v1/pages", files=_files(1))
        assert resp.json()["pages"][-1]["ordinal"] == 3

    async def test_empty_upload_rejected(self, client: AsyncClient):
        resp = await client.post("/v1/pages", files=[("files", ("blank.png", b"", "image/png"))])
        assert resp.status_code == 400

    async def test_reorder(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(3))
        resp = await client.post("/v1/pages/reorder", json={"order": [2, 0, 1]})
        assert resp.status_code == 200
        assert [p["name"] for p in resp.json()["pages"]] == ["page_02.png", "page_00.png", "page_01.png"]

    async def test_reorder_rejects_non_permutation(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(3))
        resp = await client.post("/v1/pages/reorder", json={"order": [0, 1]})
        assert resp.status_code == 400

    async def test_sort_descending(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(3))
        resp = await client.post("/v1/pages/sort", json={"descending": True})
        assert [p["name"] for p in resp.json()["pages"]] == ["page_02.png", "page_01.png", "page_00.png"]

    async def test_remove_and_404(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(2))
        resp = await client.delete("/v1/pages/0")
        assert resp.status_code == 200
        assert [p["ordinal"] for p in resp.json()["pages"]] == [0]

        resp = await client.delete("/v1/pages/5")
        assert resp.status_code == 404

    async def test_clear(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(2))
        resp = await client.delete("/v1/pages")
        assert resp.status_code == 200
        assert resp.json()["total"] == 0

    async def test_result_before_processing_is_404(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(1))
        resp = await client.get("/v1/pages/0/result")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRuns:
    async def test_run_processes_every_page(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(4))
        resp = await client.post("/v1/runs", json=RUN_BODY)
        assert resp.status_code == 202
        assert resp.json()["accepted"] is True

        body = await _wait_for_idle(client)
        assert body["processed_count"] == 4
        assert body["total_pages"] == 4
        assert body["mode"] == "colorize-and-translate"
        assert body["last_error_kind"] is None

        resp = await client.get("/v1/pages/2/result")
        assert resp.status_code == 200
        assert resp.content == result_bytes(2)
        assert resp.headers["content-type"] == "image/png"

    async def test_run_without_pages_is_400(self, client: AsyncClient):
        resp = await client.post("/v1/runs", json=RUN_BODY)
        assert resp.status_code == 400

    async def test_translate_without_languages_is_400(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(1))
        resp = await client.post("/v1/runs", json={"mode": "translate", "batch_size": 1})
        assert resp.status_code == 400

    async def test_invalid_body_is_422(self, client: AsyncClient):
        resp = await client.post("/v1/runs", json={"mode": "sharpen"})
        assert resp.status_code == 422
        resp = await client.post("/v1/runs", json={"mode": "colorize", "batch_size": 0})
        assert resp.status_code == 422

    async def test_edits_rejected_during_run(self, client: AsyncClient, fake_client: FakeImageClient):
        gate = asyncio.Event()

        async def handler(call):
            await gate.wait()
            return [GeneratedImage(result_bytes(o), "image/png") for o in call.targets]

        fake_client.handler = handler
        await client.post("/v1/pages", files=_files(3))
        assert (await client.post("/v1/runs", json=RUN_BODY)).status_code == 202

        assert (await client.post("/v1/pages/reorder", json={"order": [1, 0, 2]})).status_code == 409
        assert (await client.post("/v1/pages", files=_files(1))).status_code == 409
        assert (await client.post("/v1/runs", json=RUN_BODY)).status_code == 409
        assert (await client.post("/v1/pages/0/rerun")).status_code == 409

        current = (await client.get("/v1/runs/current")).json()
        assert current["is_run_active"] is True
        assert current["current_batch_number"] == 1

        gate.set()
        body = await _wait_for_idle(client)
        assert body["processed_count"] == 3

    async def test_failed_page_reports_error(self, client: AsyncClient, fake_client: FakeImageClient):
        async def handler(call):
            if call.targets == [1]:
                raise RuntimeError("API key not valid. Please pass a valid API key.")
            return [GeneratedImage(result_bytes(o), "image/png") for o in call.targets]

        fake_client.handler = handler
        await client.post("/v1/pages", files=_files(3))
        await client.post("/v1/runs", json={**RUN_BODY, "mode": "translate"})
        body = await _wait_for_idle(client)

        assert [p["status"] for p in body["pages"]] == ["done", "failed", "done"]
        assert body["pages"][1]["error_kind"] == "invalidApiKey"
        assert body["last_error_kind"] == "invalidApiKey"


class TestRerun:
    async def test_rerun_after_run(self, client: AsyncClient, fake_client: FakeImageClient):
        await client.post("/v1/pages", files=_files(3))
        await client.post("/v1/runs", json={**RUN_BODY, "mode": "colorize"})
        await _wait_for_idle(client)
        fake_client.calls.clear()

        resp = await client.post("/v1/pages/2/rerun")
        assert resp.status_code == 202
        await _wait_for_idle(client)
        [call] = fake_client.calls
        assert call.targets == [2]
        assert call.refs == [1]

    async def test_rerun_with_override(self, client: AsyncClient, fake_client: FakeImageClient):
        await client.post("/v1/pages", files=_files(3))
        await client.post("/v1/runs", json={**RUN_BODY, "mode": "colorize"})
        await _wait_for_idle(client)
        fake_client.calls.clear()

        resp = await client.post(
            "/v1/pages/2/rerun", json={"run": {**RUN_BODY, "mode": "colorize", "batch_size": 3}}
        )
        assert resp.status_code == 202
        await _wait_for_idle(client)
        assert fake_client.calls[0].refs == [0, 1]

    async def test_rerun_pending_page_is_400(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(1))
        resp = await client.post("/v1/pages/0/rerun", json={"run": RUN_BODY})
        assert resp.status_code == 400

    async def test_rerun_without_previous_run_is_400(self, client: AsyncClient):
        await client.post("/v1/pages", files=_files(1))
        resp = await client.post("/v1/pages/0/rerun")
        assert resp.status_code == 400

    async def test_rerun_unknown_page_is_404(self, client: AsyncClient):
        resp = await client.post("/v1/pages/9/rerun", json={"run": RUN_BODY})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Middlewares
# ---------------------------------------------------------------------------


class TestAuthMiddleware:
    async def test_no_token_configured_allows_requests(self, client: AsyncClient):
        resp = await client.get("/v1/pages")
        assert resp.status_code == 200

    async def test_missing_token_returns_401(self, client: AsyncClient):
        with patch("manana_service.app.MANANA_SHARED_TOKEN", "s3cret"):
            resp = await client.get("/v1/pages")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "Missing authorization token"

    async def test_wrong_token_returns_401(self, client: AsyncClient):
        with patch("manana_service.app.MANANA_SHARED_TOKEN", "s3cret"):
            resp = await client.get("/v1/pages", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    async def test_valid_token_passes(self, client: AsyncClient):
        with patch("manana_service.app.MANANA_SHARED_TOKEN", "s3cret"):
            resp = await client.get("/v1/pages", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200

    async def test_liveness_is_public(self, client: AsyncClient):
        with patch("manana_service.app.MANANA_SHARED_TOKEN", "s3cret"):
            resp = await client.get("/liveness")
        assert resp.status_code == 200


class TestBodySizeMiddleware:
    async def test_oversized_upload_returns_413(self, client: AsyncClient):
        with patch("manana_service.app.MANANA_MAX_UPLOAD_BYTES", 100):
            resp = await client.post("/v1/pages", files=_files(1))
        assert resp.status_code == 413


class TestRequestIdMiddleware:
    async def test_echoes_request_id(self, client: AsyncClient):
        resp = await client.get("/liveness", headers={"x-request-id": "abc-123"})
        assert resp.headers["x-request-id"] == "abc-123"

    async def test_generates_request_id(self, client: AsyncClient):
        resp = await client.get("/liveness")
        assert len(resp.headers["x-request-id"]) > 0
