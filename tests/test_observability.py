"""
Tests for structured logging and the run_sync helper.
"""

import asyncio
import json
import logging
import time

import pytest

from overage_billing.core.async_utils import run_sync
from overage_billing.core.structured_logging import run_id_var, setup_logging, tenant_id_var


def _read_lines(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


class TestStructuredLogging:
    def test_json_lines_carry_context(self, tmp_path):
        setup_logging(log_dir=str(tmp_path), log_file="test.jsonl")
        logger = logging.getLogger("overage_billing.test")

        t_token = tenant_id_var.set("t42")
        r_token = run_id_var.set("run123")
        try:
            logger.info("reconciled", extra={"quantity": 7})
        finally:
            tenant_id_var.reset(t_token)
            run_id_var.reset(r_token)

        entry = _read_lines(tmp_path / "test.jsonl")[-1]
        assert entry["event"] == "reconciled"
        assert entry["level"] == "info"
        assert entry["tenant_id"] == "t42"
        assert entry["run_id"] == "run123"
        assert entry["quantity"] == 7
        assert entry["service"] == "overage-billing"
        assert "ts" in entry

    def test_context_absent_outside_tenant_scope(self, tmp_path):
        setup_logging(log_dir=str(tmp_path), log_file="test.jsonl")
        logging.getLogger("overage_billing.test").warning("idle")

        entry = _read_lines(tmp_path / "test.jsonl")[-1]
        assert "tenant_id" not in entry
        assert entry["level"] == "warning"


class TestRunSync:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        assert await run_sync(lambda a, b=0: a + b, 2, b=3) == 5

    @pytest.mark.asyncio
    async def test_times_out(self):
        with pytest.raises(TimeoutError):
            await run_sync(time.sleep, 0.3, timeout=0.05)

    @pytest.mark.asyncio
    async def test_propagates_exceptions(self):
        def _boom():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await run_sync(_boom)

    @pytest.mark.asyncio
    async def test_does_not_block_event_loop(self):
        ticks = []

        async def _ticker():
            for _ in range(3):
                ticks.append(1)
                await asyncio.sleep(0.01)

        await asyncio.gather(run_sync(time.sleep, 0.1), _ticker())
        assert len(ticks) == 3
