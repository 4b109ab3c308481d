"""
Tests for application startup and shutdown.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.config import settings
from paygate.main import app, lifespan


class TestLifespan:
    """Tests for the lifespan manager."""

    async def test_starts_and_stops_sweeper(
        self, session_factory: async_sessionmaker[AsyncSession], seeded: None
    ):
        run_forever_started = asyncio.Event()

        async def fake_run_forever(self, stop_event: asyncio.Event) -> None:
            run_forever_started.set()
            await stop_event.wait()

        with (
            patch.object(settings, "sweeper_enabled", True),
            patch("paygate.main.get_engine", MagicMock()),
            patch("paygate.main.instrument_sqlalchemy"),
            patch("paygate.main.get_session_factory", return_value=session_factory),
            patch("paygate.main.close_clients", new_callable=AsyncMock) as close_clients,
            patch("paygate.main.close_engines", new_callable=AsyncMock) as close_engines,
            patch("paygate.main.ExpirySweeper.run_forever", fake_run_forever),
        ):
            async with lifespan(app):
                await asyncio.wait_for(run_forever_started.wait(), timeout=1)

        close_clients.assert_awaited_once()
        close_engines.assert_awaited_once()

    async def test_migrations_run_when_enabled(self):
        engine = MagicMock()
        with (
            patch.object(settings, "sweeper_enabled", False),
            patch.object(settings, "run_migrations_on_startup", True),
            patch("paygate.main.get_engine", return_value=engine),
            patch("paygate.main.instrument_sqlalchemy"),
            patch("paygate.main.run_migrations", new_callable=AsyncMock) as run_migrations,
            patch("paygate.main.close_clients", new_callable=AsyncMock),
            patch("paygate.main.close_engines", new_callable=AsyncMock),
        ):
            async with lifespan(app):
                pass

        run_migrations.assert_awaited_once_with(engine)

    async def test_migrations_skipped_by_default(self):
        with (
            patch.object(settings, "sweeper_enabled", False),
            patch("paygate.main.get_engine", MagicMock()),
            patch("paygate.main.instrument_sqlalchemy"),
            patch("paygate.main.run_migrations", new_callable=AsyncMock) as run_migrations,
            patch("paygate.main.close_clients", new_callable=AsyncMock),
            patch("paygate.main.close_engines", new_callable=AsyncMock),
        ):
            async with lifespan(app):
                pass

        run_migrations.assert_not_awaited()


class TestMetricsEndpoint:
    async def test_disabled_metrics_404(self):
        from httpx import ASGITransport, AsyncClient

        with patch.object(settings, "metrics_enabled", False):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
                response = await http.get("/metrics")

        assert response.status_code == 404
