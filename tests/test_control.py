"""Tests for the control API."""

import httpx
import pytest
from fastapi import FastAPI

from polyarb.api.control import create_control_router
from polyarb.live.watcher import Watcher
from tests.test_watcher import make_watcher


def client_for(watcher: Watcher) -> httpx.AsyncClient:
    app = FastAPI()
    app.include_router(create_control_router(watcher))
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_status_snapshot() -> None:
    watcher = make_watcher()
    await watcher.run_block(101)
    async with client_for(watcher) as client:
        response = await client.get("/api/arb/status")

    assert response.status_code == 200
    body = response.json()
    assert body["last_block_processed"] == 101
    assert body["trades_executed"] == 1
    assert body["risk"]["state"] == "normal"
    assert body["performance"]["blocks_processed"] == 1
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_pause_and_resume() -> None:
    watcher = make_watcher()
    watcher.running = True
    try:
        async with client_for(watcher) as client:
            paused = await client.post("/api/arb/pause", json={"reason": "deploy"})
            assert paused.json() == {"paused": True, "reason": "deploy"}

            resumed = await client.post("/api/arb/resume")
            assert resumed.status_code == 200
            assert resumed.json() == {"paused": False}
    finally:
        await watcher.stop()


@pytest.mark.asyncio
async def test_resume_refused_when_not_running() -> None:
    watcher = make_watcher()
    async with client_for(watcher) as client:
        response = await client.post("/api/arb/resume")
    assert response.status_code == 409
    assert response.json()["detail"] == "Watcher is not running"


@pytest.mark.asyncio
async def test_emergency_stop_blocks_resume_until_cleared() -> None:
    watcher = make_watcher()
    watcher.running = True
    try:
        async with client_for(watcher) as client:
            stopped = await client.post("/api/arb/emergency-stop", json={"reason": "bad fills"})
            assert stopped.json() == {"stopped": True, "reason": "bad fills"}
            assert watcher.paused
            assert watcher.risk.emergency_stopped

            refused = await client.post("/api/arb/resume")
            assert refused.status_code == 409
            assert refused.json()["detail"] == "Emergency stop engaged"

            cleared = await client.post("/api/arb/emergency-stop/clear")
            # The breaker tripped by the stop is still cooling down.
            assert cleared.json() == {"stopped": False, "trading_allowed": False}
    finally:
        await watcher.stop()
