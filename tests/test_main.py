"""Tests for the application lifecycle helpers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI

from rpsclassifier.main import _housekeeping


async def _run_housekeeping(app: FastAPI, until: MagicMock, calls: int) -> None:
    task = asyncio.create_task(_housekeeping(app, 0.01))
    try:
        for _ in range(500):
            if until.call_count >= calls:
                return
            await asyncio.sleep(0.01)
        pytest.fail("housekeeping did not run enough passes")
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


class TestHousekeeping:
    async def test_evicts_sessions_and_models(self) -> None:
        app = FastAPI()
        app.state.session_store = MagicMock()
        app.state.session_store.evict_idle.return_value = 2
        app.state.model_manager = MagicMock()

        await _run_housekeeping(app, app.state.model_manager.unload_idle_models, 1)

        app.state.session_store.evict_idle.assert_called()

    async def test_failed_pass_is_logged_and_loop_continues(self, caplog: pytest.LogCaptureFixture) -> None:
        app = FastAPI()
        app.state.session_store = MagicMock()
        failures = iter([RuntimeError("store corrupted")])

        def evict_idle() -> int:
            for exc in failures:
                raise exc
            return 0

        app.state.session_store.evict_idle.side_effect = evict_idle
        app.state.model_manager = MagicMock()

        with caplog.at_level(logging.ERROR, logger="rpsclassifier.main"):
            await _run_housekeeping(app, app.state.model_manager.unload_idle_models, 1)

        assert app.state.session_store.evict_idle.call_count >= 2
        assert "Housekeeping pass failed" in caplog.text
