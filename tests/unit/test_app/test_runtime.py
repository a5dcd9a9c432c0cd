"""Tests for process wiring."""

from unittest.mock import MagicMock

import pytest

from ticketing_reliability.app.runtime import (
    OUTBOX_CLEANUP_JOB,
    OUTBOX_RETRY_SWEEPER_JOB,
    build_job_registry,
    build_runtime,
)
from ticketing_reliability.core.settings import OutboxSettings


@pytest.mark.unit
class TestBuildJobRegistry:
    """Test suite for the static job table."""

    def test_outbox_jobs_are_registered(self):
        """Test that the sweeper and the cleanup run on their configured schedules."""
        sweeper = MagicMock()
        settings = OutboxSettings(sweep_schedule="30 seconds", cleanup_schedule="0 4 * * *")

        registry = build_job_registry(sweeper, settings)

        assert registry.names() == [OUTBOX_RETRY_SWEEPER_JOB, OUTBOX_CLEANUP_JOB]
        sweep = registry.get(OUTBOX_RETRY_SWEEPER_JOB)
        assert sweep.schedule_spec == "30 seconds"
        assert sweep.handler is sweeper.sweep
        cleanup = registry.get(OUTBOX_CLEANUP_JOB)
        assert cleanup.schedule_spec == "0 4 * * *"
        assert cleanup.handler is sweeper.cleanup


@pytest.mark.unit
class TestBuildRuntime:
    """Test suite for build_runtime."""

    @pytest.mark.asyncio
    async def test_components_share_engine_and_broker(self, db_engine, confirming_broker):
        """Test that every component is wired without I/O."""
        runtime = build_runtime(engine=db_engine, broker=confirming_broker)

        assert runtime.engine is db_engine
        assert runtime.broker is confirming_broker
        assert runtime.registry.names() == [OUTBOX_RETRY_SWEEPER_JOB, OUTBOX_CLEANUP_JOB]
        assert runtime.scheduler.running is False
