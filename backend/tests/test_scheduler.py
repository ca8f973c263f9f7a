"""Overdue scheduler tests."""

import asyncio
from datetime import datetime, timedelta

import pytest

from app.config import settings
from app.deps import get_coordinator
from app.main import app
from app.models.ledger_document import DocumentStatus
from app.services.reconciliation import LedgerCoordinator
from app.services.scheduler import lifespan, run_overdue_sweep, seconds_until

NOW = datetime(2025, 5, 15, 12, 0, 0)


@pytest.mark.unit
class TestSecondsUntil:

    def test_later_today(self):
        assert seconds_until(14, NOW) == 2 * 3600

    def test_rolls_over_to_tomorrow(self):
        assert seconds_until(2, NOW) == 14 * 3600

    def test_rolls_over_month_end(self):
        assert seconds_until(2, datetime(2025, 5, 31, 23, 0)) == 3 * 3600


@pytest.mark.integration
@pytest.mark.asyncio
class TestOverdueSweep:

    async def test_sweep_uses_coordinator_clock(self, coordinator, make_document, clock):
        doc = await make_document(100, due_date=NOW + timedelta(hours=1))

        assert await run_overdue_sweep(coordinator) == 0
        clock.advance(hours=2)
        assert await run_overdue_sweep(coordinator) == 1

        assert (await coordinator.get_document(doc.id)).status == DocumentStatus.OVERDUE


class SlowRenderer:
    def __init__(self):
        self.rendered = []

    async def render(self, document):
        await asyncio.sleep(0.01)
        self.rendered.append(document.reference_number)
        return b"%PDF"


@pytest.mark.integration
@pytest.mark.asyncio
class TestLifespan:

    async def test_shutdown_cancels_loop_and_drains_renders(
        self, session_factory, clock, make_document, monkeypatch
    ):
        renderer = SlowRenderer()
        coordinator = LedgerCoordinator(session_factory, renderer=renderer, clock=clock)
        monkeypatch.setattr(settings, "enable_overdue_scheduler", True)
        app.dependency_overrides[get_coordinator] = lambda: coordinator
        doc = await make_document(100)

        try:
            async with lifespan(app):
                coordinator.dispatcher.dispatch(doc)
                assert renderer.rendered == []
        finally:
            app.dependency_overrides.clear()

        assert renderer.rendered == [doc.reference_number]
